"""
Order Service — 課金の突き合わせ (Reconciliation)

ゲートウェイで課金が確定したのに注文をコミットできなかった場合、
その課金は「孤立した課金」になる。チェックアウトは即座に返金を試み、
結果にかかわらずこの台帳に記録する。
課金の応答を受け取れなかった場合（通信エラー・processing）も、
課金されている可能性があるので unconfirmed として記録する。

    state:
        unconfirmed → 課金されたかどうか不明（sweep でゲートウェイに照会）
        pending     → 課金済み・返金がまだ成功していない（sweep で再試行）
        refunded    → 返金済み
        void        → 課金されていなかったことが確定した

sweep() は unconfirmed / pending の行を 1 件ずつ解決する。
"""

import logging
import uuid

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .db import for_update, now_ms
from .errors import RefundError
from .gateway import GatewayError
from .payments import NOT_CHARGED_STATUSES, CapturedCharge, PaymentOrchestrator

logger = logging.getLogger(__name__)

UNCONFIRMED = "unconfirmed"
PENDING = "pending"
REFUNDED = "refunded"
VOID = "void"

OPEN_STATES = (UNCONFIRMED, PENDING)

# ゲートウェイの検索インデックスに反映されるまでは「見つからない」を void にしない
UNCONFIRMED_GRACE_MS = 10 * 60 * 1000


async def _insert_entry(session: AsyncSession, **fields) -> None:
    now = now_ms()
    await session.execute(
        text("""
            INSERT INTO payment_reconciliation
                (uid, charge_id, payment_intent_id, amount_cents, customer_user_uid, food_truck_uid,
                 checkout_key, idempotency_key, reason, state, attempts, refund_id, last_error,
                 created_at, updated_at)
            VALUES
                (:uid, :charge_id, :intent_id, :amount, :customer_uid, :truck_uid,
                 :checkout_key, :gateway_key, :reason, :state, :attempts, :refund_id, :last_error,
                 :now, :now)
            ON CONFLICT (charge_id) DO NOTHING
        """),
        {"uid": str(uuid.uuid4()), "now": now, **fields},
    )


async def flag_orphaned_charge(
    session: AsyncSession,
    charge: CapturedCharge,
    customer_uid: str,
    truck_uid: str,
    checkout_key: str,
    gateway_key: str,
    reason: str,
    refund_id: str | None,
    last_error: str | None = None,
) -> None:
    """孤立した課金を台帳に記録する。返金済みなら refunded、それ以外は pending。"""
    await _insert_entry(
        session,
        charge_id=charge.charge_id,
        intent_id=charge.payment_intent_id,
        amount=charge.amount_cents,
        customer_uid=customer_uid,
        truck_uid=truck_uid,
        checkout_key=checkout_key,
        gateway_key=gateway_key,
        reason=reason,
        state=REFUNDED if refund_id else PENDING,
        attempts=1,
        refund_id=refund_id,
        last_error=last_error,
    )
    logger.warning(
        "Flagged orphaned charge %s (%s cents) for reconciliation: %s, refund=%s",
        charge.charge_id, charge.amount_cents, reason, refund_id,
    )


async def flag_unconfirmed_charge(
    session: AsyncSession,
    amount_cents: int,
    customer_uid: str,
    truck_uid: str,
    checkout_key: str,
    gateway_key: str,
    reason: str,
    payment_intent_id: str | None = None,
    charge_id: str | None = None,
) -> None:
    """結果のわからない課金を記録する。sweep がゲートウェイに照会して解決する。"""
    await _insert_entry(
        session,
        charge_id=charge_id,
        intent_id=payment_intent_id,
        amount=amount_cents,
        customer_uid=customer_uid,
        truck_uid=truck_uid,
        checkout_key=checkout_key,
        gateway_key=gateway_key,
        reason=reason,
        state=UNCONFIRMED,
        attempts=0,
        refund_id=None,
        last_error=None,
    )
    logger.warning(
        "Flagged unconfirmed charge for %s (%s cents, intent=%s): %s",
        gateway_key, amount_cents, payment_intent_id, reason,
    )


async def count_attempts(session: AsyncSession, checkout_key: str) -> int:
    """このチェックアウトで、注文にならなかった課金の試行回数"""
    result = await session.execute(
        text("SELECT COUNT(*) AS n FROM payment_reconciliation WHERE checkout_key = :key"),
        {"key": checkout_key},
    )
    return result.fetchone().n


async def is_flagged(session: AsyncSession, charge_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM payment_reconciliation WHERE charge_id = :charge_id"),
        {"charge_id": charge_id},
    )
    return result.fetchone() is not None


async def list_pending(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT uid, state, charge_id, payment_intent_id, amount_cents, reason,
                   attempts, last_error, created_at
            FROM payment_reconciliation
            WHERE state IN :states
            ORDER BY created_at ASC
        """).bindparams(bindparam("states", expanding=True)),
        {"states": list(OPEN_STATES)},
    )
    return [dict(row._mapping) for row in result.fetchall()]


async def _record_attempt(session: AsyncSession, entry_uid: str, error: str) -> None:
    await session.execute(
        text("""
            UPDATE payment_reconciliation
            SET attempts = attempts + 1, last_error = :error, updated_at = :now
            WHERE uid = :uid
        """),
        {"uid": entry_uid, "error": error, "now": now_ms()},
    )


async def _confirm(
    session: AsyncSession, payments: PaymentOrchestrator, row, grace_ms: int
) -> tuple[str, str | None]:
    """
    unconfirmed の行をゲートウェイに照会する。

    課金済みなら charge_id を記録して pending にする。課金されていなければ void にする。
    どちらとも言えない場合は unconfirmed のまま。(新しい state, charge_id) を返す。
    """
    try:
        found = await payments.find_charge(row.idempotency_key)
    except GatewayError as e:
        await _record_attempt(session, row.uid, f"Charge lookup failed: {e}")
        return UNCONFIRMED, None

    if found is None and now_ms() - row.created_at < grace_ms:
        await _record_attempt(session, row.uid, "Charge not found at gateway yet")
        return UNCONFIRMED, None
    if found is None or found.status in NOT_CHARGED_STATUSES:
        await session.execute(
            text("""
                UPDATE payment_reconciliation
                SET state = :state, attempts = attempts + 1, last_error = NULL, updated_at = :now
                WHERE uid = :uid
            """),
            {"uid": row.uid, "state": VOID, "now": now_ms()},
        )
        logger.info("Unconfirmed charge for %s was never captured", row.idempotency_key)
        return VOID, None
    if found.status != "succeeded" or not found.charge_id:
        await _record_attempt(session, row.uid, f"Charge is still {found.status}")
        return UNCONFIRMED, None

    await session.execute(
        text("""
            UPDATE payment_reconciliation
            SET state = :state, charge_id = :charge_id, payment_intent_id = :intent_id, updated_at = :now
            WHERE uid = :uid
        """),
        {
            "uid": row.uid,
            "state": PENDING,
            "charge_id": found.charge_id,
            "intent_id": found.payment_intent_id,
            "now": now_ms(),
        },
    )
    logger.warning("Unconfirmed charge for %s was captured as %s", row.idempotency_key, found.charge_id)
    return PENDING, found.charge_id


async def sweep(
    session_factory: sessionmaker,
    payments: PaymentOrchestrator,
    unconfirmed_grace_ms: int = UNCONFIRMED_GRACE_MS,
) -> dict:
    """
    unconfirmed / pending の行を 1 件ずつ解決する。

    各行はロックを取ってから照会・返金するので、並行して sweep が走っても
    同じ課金を二重に返金しない。
    """
    async with session_factory() as session:
        entries = await list_pending(session)

    refunded, voided, failed = 0, 0, 0
    for entry in entries:
        async with session_factory() as session, session.begin():
            result = await session.execute(
                text(f"""
                    SELECT uid, state, charge_id, amount_cents, idempotency_key, created_at
                    FROM payment_reconciliation
                    WHERE uid = :uid{for_update(session)}
                """),
                {"uid": entry["uid"]},
            )
            row = result.fetchone()
            if not row or row.state not in OPEN_STATES:
                continue

            charge_id = row.charge_id
            if row.state == UNCONFIRMED:
                state, charge_id = await _confirm(session, payments, row, unconfirmed_grace_ms)
                if state == VOID:
                    voided += 1
                    continue
                if state == UNCONFIRMED:
                    failed += 1
                    continue

            try:
                refund = await payments.refund(charge_id, row.amount_cents)
            except RefundError as e:
                failed += 1
                logger.error("Reconciliation refund failed for %s: %s", charge_id, e)
                await _record_attempt(session, row.uid, str(e))
                continue
            refunded += 1
            await session.execute(
                text("""
                    UPDATE payment_reconciliation
                    SET state = :state, refund_id = :refund_id, attempts = attempts + 1,
                        last_error = NULL, updated_at = :now
                    WHERE uid = :uid
                """),
                {"uid": row.uid, "state": REFUNDED, "refund_id": refund.refund_id, "now": now_ms()},
            )

    logger.info("Reconciliation sweep: %s refunded, %s void, %s still open", refunded, voided, failed)
    return {"checked": len(entries), "refunded": refunded, "void": voided, "still_pending": failed}
