"""
config.py - Process configuration.

Values are resolved once at startup and handed to each component's
constructor. Precedence, lowest first:
  1. SyncConfig defaults
  2. .env file / environment variables (CHAINMIRROR_<FIELD>)
  3. command-line flags
"""

import argparse
import os
from dataclasses import dataclass, fields, replace
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "CHAINMIRROR_"

DEFAULT_ENDPOINT = "http://127.0.0.1:8546/graphql/query"
DEFAULT_DB_PATH = "data/chainmirror.db"


@dataclass(frozen=True)
class SyncConfig:
    endpoint: str = DEFAULT_ENDPOINT
    db_path: str = DEFAULT_DB_PATH
    request_timeout: float = 30.0

    block_window: int = 10
    tx_window: int = 100
    block_start_height: int = 1
    tx_start_height: int = 1
    enable_blocks: bool = True
    enable_transactions: bool = True

    poll_interval: float = 60.0        # frontier wait
    backoff_base: float = 60.0         # first failure delay, doubles per failure
    backoff_max: Optional[float] = None  # None = uncapped
    time_lookup_retries: int = 3
    time_lookup_base: float = 60.0

    api_host: str = "0.0.0.0"
    api_port: int = 8081               # 0 disables the status API
    log_level: str = "INFO"

    def validate(self) -> "SyncConfig":
        if self.block_window <= 0 or self.tx_window <= 0:
            raise ValueError("window sizes must be positive")
        if self.block_start_height < 0 or self.tx_start_height < 0:
            raise ValueError("start heights must be non-negative")
        if self.poll_interval <= 0 or self.backoff_base <= 0 or self.time_lookup_base <= 0:
            raise ValueError("intervals must be positive")
        if self.backoff_max is not None and self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        if self.time_lookup_retries < 0:
            raise ValueError("time_lookup_retries must be non-negative")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if not self.endpoint:
            raise ValueError("endpoint is required")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, environ=None) -> "SyncConfig":
        """Build a config from CHAINMIRROR_* variables, loading ``env_file`` first."""
        if env_file:
            load_dotenv(env_file, override=False)
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            overrides[f.name] = _coerce(f.name, raw)
        return replace(cls(), **overrides)


_INT_FIELDS = {
    "block_window", "tx_window", "block_start_height", "tx_start_height",
    "time_lookup_retries", "api_port",
}
_FLOAT_FIELDS = {
    "request_timeout", "poll_interval", "backoff_base", "backoff_max", "time_lookup_base",
}
_BOOL_FIELDS = {"enable_blocks", "enable_transactions"}


def _coerce(name: str, raw: str):
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name.upper()}: invalid number {raw!r}")
    if name in _BOOL_FIELDS:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return raw


def build_arg_parser(defaults: SyncConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror a remote ledger into a local SQLite store")
    parser.add_argument("--env-file", default=None, help="Load CHAINMIRROR_* variables from this .env file")
    parser.add_argument("--endpoint", default=defaults.endpoint, help=f"Ledger GraphQL endpoint (default: {defaults.endpoint})")
    parser.add_argument("--db-path", default=defaults.db_path, help=f"SQLite database path (default: {defaults.db_path})")
    parser.add_argument("--request-timeout", type=float, default=defaults.request_timeout, help="HTTP timeout in seconds")
    parser.add_argument("--block-window", type=int, default=defaults.block_window, help=f"Blocks per fetch window (default: {defaults.block_window})")
    parser.add_argument("--tx-window", type=int, default=defaults.tx_window, help=f"Heights per transaction window (default: {defaults.tx_window})")
    parser.add_argument("--block-start", type=int, default=defaults.block_start_height, help="Lowest block height to mirror")
    parser.add_argument("--tx-start", type=int, default=defaults.tx_start_height, help="Lowest transaction height to mirror")
    parser.add_argument("--no-blocks", action="store_true", help="Disable the block stream")
    parser.add_argument("--no-transactions", action="store_true", help="Disable the transaction stream")
    parser.add_argument("--poll-interval", type=float, default=defaults.poll_interval, help="Seconds to wait at the chain tip")
    parser.add_argument("--backoff-base", type=float, default=defaults.backoff_base, help="First retry delay in seconds")
    parser.add_argument("--backoff-max", type=float, default=defaults.backoff_max, help="Retry delay cap in seconds (default: none)")
    parser.add_argument("--time-lookup-retries", type=int, default=defaults.time_lookup_retries, help="Retries when a transaction's block is not mirrored yet")
    parser.add_argument("--time-lookup-base", type=float, default=defaults.time_lookup_base, help="First block-time retry delay in seconds")
    parser.add_argument("--api-host", default=defaults.api_host, help="Status API bind address")
    parser.add_argument("--api-port", type=int, default=defaults.api_port, help="Status API port, 0 to disable")
    parser.add_argument("--log-level", default=defaults.log_level, help="Logging level (default: INFO)")
    return parser


def load_config(argv=None) -> SyncConfig:
    """Resolve configuration from defaults, .env/environment and ``argv``."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=None)
    known, _ = pre.parse_known_args(argv)

    defaults = SyncConfig.from_env(env_file=known.env_file)
    args = build_arg_parser(defaults).parse_args(argv)
    config = replace(
        defaults,
        endpoint=args.endpoint,
        db_path=args.db_path,
        request_timeout=args.request_timeout,
        block_window=args.block_window,
        tx_window=args.tx_window,
        block_start_height=args.block_start,
        tx_start_height=args.tx_start,
        enable_blocks=defaults.enable_blocks and not args.no_blocks,
        enable_transactions=defaults.enable_transactions and not args.no_transactions,
        poll_interval=args.poll_interval,
        backoff_base=args.backoff_base,
        backoff_max=args.backoff_max,
        time_lookup_retries=args.time_lookup_retries,
        time_lookup_base=args.time_lookup_base,
        api_host=args.api_host,
        api_port=args.api_port,
        log_level=args.log_level.upper(),
    )
    return config.validate()
