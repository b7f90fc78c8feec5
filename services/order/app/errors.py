"""
Order Service — エラー定義

チェックアウトと状態遷移で発生する業務エラー。
各例外は HTTP ステータスを持ち、main.py の例外ハンドラで
{"error": message} 形式のレスポンスに変換される。
"""


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    """入力不正（副作用の前に検出される）"""
    status_code = 400


class Unauthenticated(OrderServiceError):
    """上流で解決された利用者 ID がリクエストにない"""
    status_code = 401


class PermissionDenied(OrderServiceError):
    status_code = 403


class NotFoundError(OrderServiceError):
    status_code = 404


class AvailabilityConflict(OrderServiceError):
    """商品・カテゴリが販売停止中"""
    status_code = 409


class DeliveryConflict(OrderServiceError):
    """配達範囲外・最低注文金額未満など"""
    status_code = 409


class TruckUnavailable(OrderServiceError):
    """トラックが online ではない"""
    status_code = 409


class InvalidTransition(OrderServiceError):
    """状態遷移表にない遷移"""
    status_code = 409


class PaymentError(OrderServiceError):
    """決済ゲートウェイが課金を拒否した"""
    status_code = 402


class PaymentPending(PaymentError):
    """
    課金の結果がわからない（通信エラー・タイムアウト・processing）。
    ゲートウェイ側では確定している可能性があるので、突き合わせ台帳で解決する。
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        payment_intent_id: str | None = None,
        charge_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.payment_intent_id = payment_intent_id
        self.charge_id = charge_id


class RefundError(OrderServiceError):
    """返金に失敗した（状態遷移はロールバックされる）"""
    status_code = 502
