import os
from decimal import Decimal, InvalidOperation
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _tax_rate(self, raw: str) -> Decimal:
        try:
            rate = Decimal((raw or "").strip() or "0.16")
        except InvalidOperation:
            raise ValueError(f"TAX_RATE is not a number: {raw!r}")
        if rate < 0 or rate >= 1:
            raise ValueError(f"TAX_RATE must be in [0, 1): {rate}")
        return rate

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/tillbook"
        self.db_pool_min = _env_int("DB_POOL_MIN_SIZE", 1)
        self.db_pool_max = _env_int("DB_POOL_MAX_SIZE", 10)
        # Comma-separated list of allowed CORS origins for browser clients.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # VAT applied to every issued document: tax = subtotal * tax_rate.
        self.tax_rate = self._tax_rate(os.getenv("TAX_RATE", ""))
        # Document numbers look like "SRV-00042"; width is the zero-padded part.
        self.doc_no_width = max(1, _env_int("DOC_NO_WIDTH", 5))
        self.doc_no_max_attempts = max(1, _env_int("DOC_NO_MAX_ATTEMPTS", 50))


settings = Settings()
