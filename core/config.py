"""
Configuration + logging bootstrap.

All settings come from the environment (optionally a .env file at the repo
root). Nothing here talks to a chain.
"""

import os
import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_GAS_BUFFER = 1.2
DEFAULT_TX_TIMEOUT = 120


# ============================================================
# SETTINGS
# ============================================================

@dataclass(frozen=True)
class Settings:
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: Optional[int] = None
    owner_private_key: str = ""
    operator_private_key: str = ""
    factory_address: str = ""
    operation_address: str = ""
    artifacts_dir: Optional[Path] = None
    gas_buffer: float = DEFAULT_GAS_BUFFER
    tx_timeout: int = DEFAULT_TX_TIMEOUT
    devchain_host: str = "127.0.0.1"
    devchain_port: int = 8545
    devchain_chain_id: int = 31337
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """
        Build settings from os.environ after loading env_file (default: ROOT/.env).
        Existing environment variables win over the file.
        """
        load_dotenv(env_file or ROOT / ".env")

        artifacts_dir = os.getenv("ARTIFACTS_DIR", "").strip()
        chain_id = os.getenv("CHAIN_ID", "").strip()

        settings = cls(
            rpc_url=os.getenv("RPC_URL", DEFAULT_RPC_URL),
            chain_id=_int_env("CHAIN_ID", chain_id) if chain_id else None,
            owner_private_key=os.getenv("OWNER_PRIVATE_KEY", ""),
            operator_private_key=os.getenv("OPERATOR_PRIVATE_KEY", ""),
            factory_address=os.getenv("FACTORY_ADDRESS", ""),
            operation_address=os.getenv("OPERATION_ADDRESS", ""),
            artifacts_dir=Path(artifacts_dir) if artifacts_dir else None,
            gas_buffer=_float_env("GAS_BUFFER", os.getenv("GAS_BUFFER", str(DEFAULT_GAS_BUFFER))),
            tx_timeout=_int_env("TX_TIMEOUT", os.getenv("TX_TIMEOUT", str(DEFAULT_TX_TIMEOUT))),
            devchain_host=os.getenv("DEVCHAIN_HOST", "127.0.0.1"),
            devchain_port=_int_env("DEVCHAIN_PORT", os.getenv("DEVCHAIN_PORT", "8545")),
            devchain_chain_id=_int_env("DEVCHAIN_CHAIN_ID", os.getenv("DEVCHAIN_CHAIN_ID", "31337")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        if settings.gas_buffer < 1.0:
            raise ValueError(f"GAS_BUFFER must be >= 1.0, got {settings.gas_buffer}")
        return settings

    def private_keys(self) -> list[str]:
        """Configured signer keys in [owner, operator] order (empty entries dropped)."""
        return [k for k in (self.owner_private_key, self.operator_private_key) if k]


def _int_env(name: str, raw: str) -> int:
    try:
        return int(raw, 0)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


# ============================================================
# LOGGING
# ============================================================

class SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    mask = SecretMaskingFilter()
    for handler in logging.root.handlers:
        if not any(isinstance(f, SecretMaskingFilter) for f in handler.filters):
            handler.addFilter(mask)
