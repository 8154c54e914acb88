import importlib
import os
from dataclasses import dataclass

DEFAULT_LEDGER_GATEWAY_URL = "http://127.0.0.1:8090"
DEFAULT_WALLET_SERVICE_URL = "http://127.0.0.1:8000"
DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 8080

DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS = 900
DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_SWAP_SLIPPAGE_BPS = 500
DEFAULT_SWAP_DEADLINE_SECONDS = 600
DEFAULT_FINALITY_TIMEOUT_SECONDS = 300
DEFAULT_LEDGER_TIMEOUT_SECONDS = 15.0
DEFAULT_LEDGER_MAX_RETRIES = 2
DEFAULT_LEDGER_RETRY_BASE_DELAY_SECONDS = 0.5
DEFAULT_NATIVE_ASSET_ID = 1


def load_env() -> None:
    """Load .env if python-dotenv is available."""
    try:
        _dotenv = importlib.import_module("dotenv")
        _load_dotenv = getattr(_dotenv, "load_dotenv", None)
        if callable(_load_dotenv):
            _load_dotenv()
    except ModuleNotFoundError:
        pass


def _normalize_url(value: str | None, default: str) -> str:
    raw = (value or default).strip()
    if raw and not raw.startswith(("http://", "https://")):
        raw = f"https://{raw}"
    return raw.rstrip("/")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return float(raw)


def get_ledger_gateway_url() -> str:
    return _normalize_url(os.getenv("LEDGER_GATEWAY_URL"), DEFAULT_LEDGER_GATEWAY_URL)


def get_wallet_service_url() -> str:
    return _normalize_url(os.getenv("WALLET_SERVICE_URL"), DEFAULT_WALLET_SERVICE_URL)


def resolve_inner_calls_key_with_source() -> tuple[str, str]:
    for name in ("INNER_CALLS_KEY", "SELF_API_KEY", "API_KEY"):
        raw = (os.getenv(name) or "").strip()
        if raw:
            return raw, name
    return "", "(none)"


def get_api_key() -> str:
    key, _ = resolve_inner_calls_key_with_source()
    return key


def get_database_url() -> str | None:
    return (os.getenv("DATABASE_URL") or "").strip() or None


def get_http_bind() -> tuple[str, int]:
    host = os.getenv("HTTP_HOST", DEFAULT_HTTP_HOST)
    port = int(os.getenv("PORT", os.getenv("HTTP_PORT", str(DEFAULT_HTTP_PORT))))
    return host, port


@dataclass(frozen=True)
class FlowSettings:
    idle_timeout_seconds: int = DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS
    sweep_interval_seconds: int = DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS
    swap_slippage_bps: int = DEFAULT_SWAP_SLIPPAGE_BPS
    swap_deadline_seconds: int = DEFAULT_SWAP_DEADLINE_SECONDS
    finality_timeout_seconds: float = DEFAULT_FINALITY_TIMEOUT_SECONDS
    ledger_timeout_seconds: float = DEFAULT_LEDGER_TIMEOUT_SECONDS
    ledger_max_retries: int = DEFAULT_LEDGER_MAX_RETRIES
    ledger_retry_base_delay_seconds: float = DEFAULT_LEDGER_RETRY_BASE_DELAY_SECONDS
    native_asset_id: int = DEFAULT_NATIVE_ASSET_ID

    def __post_init__(self) -> None:
        if not 0 <= self.swap_slippage_bps < 10_000:
            raise ValueError("swap_slippage_bps must be in [0, 10000)")
        if self.idle_timeout_seconds <= 0:
            raise ValueError("idle_timeout_seconds must be positive")


def load_flow_settings() -> FlowSettings:
    """Build flow settings from the environment, falling back to defaults."""
    return FlowSettings(
        idle_timeout_seconds=_env_int("SESSION_IDLE_TIMEOUT_SECONDS", DEFAULT_SESSION_IDLE_TIMEOUT_SECONDS),
        sweep_interval_seconds=_env_int("SESSION_SWEEP_INTERVAL_SECONDS", DEFAULT_SESSION_SWEEP_INTERVAL_SECONDS),
        swap_slippage_bps=_env_int("SWAP_SLIPPAGE_BPS", DEFAULT_SWAP_SLIPPAGE_BPS),
        swap_deadline_seconds=_env_int("SWAP_DEADLINE_SECONDS", DEFAULT_SWAP_DEADLINE_SECONDS),
        finality_timeout_seconds=_env_float("FINALITY_TIMEOUT_SECONDS", DEFAULT_FINALITY_TIMEOUT_SECONDS),
        ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", DEFAULT_LEDGER_TIMEOUT_SECONDS),
        ledger_max_retries=_env_int("LEDGER_MAX_RETRIES", DEFAULT_LEDGER_MAX_RETRIES),
        ledger_retry_base_delay_seconds=_env_float(
            "LEDGER_RETRY_BASE_DELAY_SECONDS", DEFAULT_LEDGER_RETRY_BASE_DELAY_SECONDS
        ),
        native_asset_id=_env_int("NATIVE_ASSET_ID", DEFAULT_NATIVE_ASSET_ID),
    )
