import os
from decimal import Decimal, InvalidOperation
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def _decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except InvalidOperation:
            return Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/fuelflow')
        # Comma-separated list of allowed CORS origins for the browser UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Applied per transaction; a blocked row lock fails fast instead of hanging the request.
        self.lock_timeout_ms = self._int("DB_LOCK_TIMEOUT_MS", 5000)
        self.default_invoice_prefix = (os.getenv("DEFAULT_INVOICE_PREFIX") or "INV").strip().upper() or "INV"
        self.default_vat_percentage = self._decimal("DEFAULT_VAT_PERCENTAGE", "5.00")
        self.overdue_threshold_days = max(1, self._int("OVERDUE_THRESHOLD_DAYS", 30))

settings = Settings()
