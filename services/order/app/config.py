"""
Order Service — 設定

すべての設定値は環境変数から読み込む。
外部サービスのキーが未設定の場合は、シミュレーション用のクライアントに切り替わる。
"""

import os
from decimal import Decimal

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# ── 外部サービス ─────────────────────────────────

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
STRIPE_API_URL = os.environ.get("STRIPE_API_URL", "https://api.stripe.com/v1")
MAPBOX_ACCESS_TOKEN = os.environ.get("MAPBOX_ACCESS_TOKEN")
SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY")
SENDER_EMAIL = os.environ.get("SENDER_EMAIL")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "30"))

# ── 注文計算 ─────────────────────────────────────

TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.09"))
CURRENCY = os.environ.get("CURRENCY", "usd")
DEFAULT_PREPARATION_MINUTES = int(os.environ.get("DEFAULT_PREPARATION_MINUTES", "15"))
DELIVERY_BUFFER_MINUTES = int(os.environ.get("DELIVERY_BUFFER_MINUTES", "15"))

# ── 運用 ─────────────────────────────────────────

# /internal/* の呼び出しに必要な共有トークン。未設定なら /internal/* は使えない
INTERNAL_API_TOKEN = os.environ.get("INTERNAL_API_TOKEN")
# 結果不明の課金が見つからないとき、void とするまでの猶予
RECONCILIATION_GRACE_SECONDS = int(os.environ.get("RECONCILIATION_GRACE_SECONDS", "600"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
