# indexer/idx_config.py
# Environment loader. Read once at startup; the frozen result is handed to every component.

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional

from dotenv import load_dotenv

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEVNET_HTTP = "https://api.devnet.solana.com"
RAYDIUM_CPMM_DEVNET = "CPMDWBwJDtYax9qW7AyRuVC19Cc4L4Vcy4n2BHAbHkCW"

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

TOKEN_SYMBOLS = {
    WSOL_MINT: "SOL",
    USDC_MINT: "USDC",
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class IndexerConfig:
    rpc_http: str = DEVNET_HTTP
    rpc_ws: str = ""
    watch_programs: FrozenSet[str] = frozenset()
    primary_program: Optional[str] = RAYDIUM_CPMM_DEVNET
    start_slot: int = 289001565
    debug: bool = False
    batch_size: int = 5
    batch_delay: float = 3.0
    progress_every: int = 100
    fetch_max_retries: int = 3
    fetch_base_delay: float = 1.0
    health_interval: float = 30.0
    startup_retries: int = 5
    rpc_timeout: float = 30.0
    commitment: str = "confirmed"
    log_dir: str = "logs"
    db_url: Optional[str] = None
    token_symbols: Mapping[str, str] = field(default_factory=lambda: MappingProxyType(dict(TOKEN_SYMBOLS)), hash=False)


def _helius_urls():
    key = os.getenv("HELIUS_KEY") or ""
    if not key:
        return {"ws": "", "http": ""}
    base = "mainnet.helius-rpc.com"
    return {
        "ws":   f"wss://{base}/?api-key={key}",
        "http": f"https://{base}/?api-key={key}",
    }


def ws_from_http(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def parse_program_ids(raw: Optional[str]) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


def _int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


def load_env(dotenv_path: Optional[str] = None) -> IndexerConfig:
    load_dotenv(dotenv_path or os.path.join(ROOT, ".env"))

    # Prefer explicit SOLANA_*; otherwise fall back to HELIUS_KEY-derived URLs, then devnet
    helius = _helius_urls()
    rpc_http = os.getenv("SOLANA_RPC_URL") or helius["http"] or DEVNET_HTTP
    rpc_ws = os.getenv("SOLANA_WS_URL") or ""
    if not rpc_ws:
        rpc_ws = helius["ws"] if rpc_http == helius["http"] else ws_from_http(rpc_http)

    cfg = IndexerConfig(
        rpc_http=rpc_http,
        rpc_ws=rpc_ws,
        watch_programs=parse_program_ids(os.getenv("WATCH_PROGRAM_IDS")),
        primary_program=os.getenv("WATCH_PROGRAM_ID", RAYDIUM_CPMM_DEVNET).strip() or None,
        start_slot=_int("START_SLOT", 289001565),
        debug=os.getenv("DEBUG", "").strip().lower() == "true",
        batch_size=_int("BACKFILL_BATCH_SIZE", 5),
        batch_delay=_float("BACKFILL_BATCH_DELAY", 3.0),
        progress_every=_int("PROGRESS_EVERY", 100),
        fetch_max_retries=_int("FETCH_MAX_RETRIES", 3),
        fetch_base_delay=_float("FETCH_BASE_DELAY", 1.0),
        health_interval=_float("HEALTH_INTERVAL", 30.0),
        startup_retries=_int("STARTUP_RETRIES", 5),
        rpc_timeout=_float("RPC_TIMEOUT", 30.0),
        commitment=os.getenv("RPC_COMMITMENT", "confirmed"),
        log_dir=os.getenv("LOG_DIR", "logs"),
        db_url=os.getenv("DB_URL") or None,
    )
    if cfg.batch_size < 1:
        raise ConfigError("BACKFILL_BATCH_SIZE must be >= 1")
    if cfg.fetch_max_retries < 0:
        raise ConfigError("FETCH_MAX_RETRIES must be >= 0")
    return cfg
