"""
Order Service — DB ヘルパー

行ロック (SELECT ... FOR UPDATE) が唯一の同時実行制御。
SQLite には行ロックがないため、その方言の時だけロック句を省く。
"""

import time

from sqlalchemy.ext.asyncio import AsyncSession


def for_update(session: AsyncSession) -> str:
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return ""
    return " FOR UPDATE"


def now_ms() -> int:
    """エポックミリ秒（DB の時刻カラムはすべてこの形式）"""
    return int(time.time() * 1000)
