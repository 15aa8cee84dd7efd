import os
from functools import lru_cache

from pydantic import BaseModel

DEFAULT_UNIVERSE = "HAL,INFY,TCS,RELIANCE,ITC,HDFCBANK,ICICIBANK,SBIN,LT,BAJFINANCE"


def _split_csv(raw: str | None) -> list[str]:
    out: list[str] = []
    for item in (raw or "").split(","):
        value = item.strip()
        if value and value not in out:
            out.append(value)
    return out


class Settings(BaseModel):
    KITE_API_KEY: str = ""
    KITE_API_SECRET: str = ""
    KITE_ACCESS_TOKEN: str = ""
    PORT: int = 8080
    APP_BASE_URL: str = ""
    NIFTY100: list[str] = _split_csv(DEFAULT_UNIVERSE)
    ADMIN_SECRET: str = ""
    KITE_EXCHANGE: str = "NSE"
    KITE_API_ROOT: str = "https://api.kite.trade"
    KITE_LOGIN_URL: str = "https://kite.trade/connect/login"
    KITE_WS_URL: str = "wss://ws.kite.trade"
    KITE_HTTP_TIMEOUT_SEC: float = 10.0
    KITE_WS_MAX_RETRIES: int = 50
    ALLOWED_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        universe = _split_csv(os.getenv("NIFTY100", DEFAULT_UNIVERSE))
        port = os.getenv("PORT", "8080")

        values = {
            "KITE_API_KEY": os.getenv("KITE_API_KEY", ""),
            "KITE_API_SECRET": os.getenv("KITE_API_SECRET", ""),
            "KITE_ACCESS_TOKEN": os.getenv("KITE_ACCESS_TOKEN", ""),
            "PORT": port,
            "APP_BASE_URL": os.getenv("APP_BASE_URL") or f"http://localhost:{port}",
            "NIFTY100": universe,
            "ADMIN_SECRET": os.getenv("ADMIN_SECRET", ""),
            "ALLOWED_ORIGINS": _split_csv(os.getenv("ALLOWED_ORIGINS", "*")),
        }
        for name in (
            "KITE_EXCHANGE",
            "KITE_API_ROOT",
            "KITE_LOGIN_URL",
            "KITE_WS_URL",
            "KITE_HTTP_TIMEOUT_SEC",
            "KITE_WS_MAX_RETRIES",
            "LOG_LEVEL",
        ):
            raw = os.getenv(name)
            if raw:
                values[name] = raw.strip()

        return cls.model_validate(values)

    def missing_credentials(self) -> list[str]:
        return [name for name in ("KITE_API_KEY", "KITE_API_SECRET") if not getattr(self, name)]


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
