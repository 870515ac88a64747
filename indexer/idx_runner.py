# indexer/idx_runner.py
# Runner: diagnostics, one-off backfill, and the full backfill -> live tail service.
# Requires: aiohttp, websockets, orjson, base58, python-dotenv (asyncpg when DB_URL is set).

import asyncio, sys, signal, contextlib, argparse, logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from indexer.backfill import BackfillScheduler, BackfillStats
from indexer.fetcher import ResilientFetcher
from indexer.idx_config import ConfigError, IndexerConfig, load_env
from indexer.live_tail import LiveTailSubscriber
from indexer.log_sink import EventLog, FanoutSink, JsonlFileSink, LogSink, PgLogSink
from indexer.pipeline import SlotProcessor
from indexer.rpc_client import BlockSource, SolanaRpcSource

log = logging.getLogger("indexer")


class StartupError(RuntimeError):
    pass


def setup_logging(debug: bool):
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO,
                        format="%(asctime)s | %(levelname)s | %(message)s")

###############################################################################
# Wiring
###############################################################################

def build_source(cfg: IndexerConfig) -> SolanaRpcSource:
    return SolanaRpcSource(cfg.rpc_http, cfg.rpc_ws, commitment=cfg.commitment, timeout=cfg.rpc_timeout)


async def build_sink(cfg: IndexerConfig) -> LogSink:
    sinks = [JsonlFileSink(cfg.log_dir)]
    if cfg.db_url:
        sinks.append(await PgLogSink.create(cfg.db_url))
    return sinks[0] if len(sinks) == 1 else FanoutSink(sinks)


def build_processor(cfg: IndexerConfig, source: BlockSource, sink: LogSink,
                    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> SlotProcessor:
    events = EventLog(sink, debug=cfg.debug, token_symbols=cfg.token_symbols)
    fetcher = ResilientFetcher(source, max_retries=cfg.fetch_max_retries,
                               base_delay=cfg.fetch_base_delay, sleep=sleep)
    return SlotProcessor(fetcher, events, cfg.watch_programs, cfg.primary_program)

###############################################################################
# Startup
###############################################################################

async def check_connection(source: BlockSource) -> Tuple[Dict, int]:
    version = await source.get_version()
    slot = await source.current_slot()
    return version, slot


async def retry_startup(step: Callable[[], Awaitable[Any]], what: str, retries: int = 5,
                        min_delay: float = 2.0, max_delay: float = 10.0,
                        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Any:
    """Run a startup step, retrying with capped exponential backoff; StartupError once retries run out."""
    attempt = 0
    while True:
        try:
            return await step()
        except Exception as e:
            attempt += 1
            log.error("%s attempt %d failed: %s", what, attempt, e)
            if attempt > retries:
                raise StartupError(f"{what} failed after {attempt} attempts: {e}") from e
            await sleep(min(min_delay * (2 ** (attempt - 1)), max_delay))


async def connect_with_retry(source: BlockSource, retries: int = 5, min_delay: float = 2.0,
                             max_delay: float = 10.0,
                             sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> Tuple[Dict, int]:
    version, slot = await retry_startup(lambda: check_connection(source), "connection test", retries=retries,
                                        min_delay=min_delay, max_delay=max_delay, sleep=sleep)
    log.info("connected: solana-core=%s current_slot=%d", version.get("solana-core", "?"), slot)
    return version, slot

###############################################################################
# Modes
###############################################################################

async def _close_all(*resources):
    # each close runs even if an earlier one raised; the first error is re-raised at the end
    first_err = None
    for r in resources:
        if r is None:
            continue
        try:
            await r.close()
        except Exception as e:
            log.error("error closing %s: %s", type(r).__name__, e)
            if first_err is None:
                first_err = e
    if first_err is not None:
        raise first_err


async def run_indexer(cfg: IndexerConfig, stop_ev: Optional[asyncio.Event] = None,
                      source: Optional[BlockSource] = None, sink: Optional[LogSink] = None,
                      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> BackfillStats:
    stop_ev = stop_ev or asyncio.Event()
    source = source or build_source(cfg)
    stats = BackfillStats()
    tail = scheduler = stopper = None
    try:
        sink = sink or await build_sink(cfg)
        processor = build_processor(cfg, source, sink, sleep=sleep)
        tail = LiveTailSubscriber(source, processor, health_interval=cfg.health_interval, sleep=sleep)
        scheduler = BackfillScheduler(processor, batch_size=cfg.batch_size, batch_delay=cfg.batch_delay,
                                      progress_every=cfg.progress_every, sleep=sleep)

        await connect_with_retry(source, retries=cfg.startup_retries, sleep=sleep)

        async def open_live():
            # subscribe before capturing latest so the seam has no gap
            if not tail.started:
                await tail.start(buffering=True)
            return await source.current_slot()

        latest = await retry_startup(open_live, "live subscription", retries=cfg.startup_retries, sleep=sleep)
        log.info("latest slot %d, backfilling from %d", latest, cfg.start_slot)

        async def history():
            result = await scheduler.backfill(cfg.start_slot, latest)
            tail.release(latest)
            return result

        hist = asyncio.create_task(history(), name="backfill")
        stopper = asyncio.create_task(stop_ev.wait(), name="stop")
        await asyncio.wait({hist, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if not hist.done():
            log.info("stop requested during backfill at slot %s", scheduler.cursor.next_slot if scheduler.cursor else "?")
            hist.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await hist
        else:
            stats = hist.result()
            log.info("live tail running; waiting for shutdown signal")
            await stopper
    finally:
        if stopper is not None:
            stopper.cancel()
        log.info("shutting down…")
        await _close_all(tail, sink, source)
    return stats


async def run_service(cfg: IndexerConfig):
    loop = asyncio.get_running_loop()
    stop_ev = asyncio.Event()
    for s in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(s, stop_ev.set)
    await run_indexer(cfg, stop_ev)


async def run_backfill(cfg: IndexerConfig, from_slot: Optional[int], to_slot: Optional[int]) -> BackfillStats:
    source = build_source(cfg)
    sink = None
    try:
        sink = await build_sink(cfg)
        await connect_with_retry(source, retries=cfg.startup_retries)
        if to_slot is None:
            to_slot = await retry_startup(source.current_slot, "latest slot", retries=cfg.startup_retries)
        processor = build_processor(cfg, source, sink)
        scheduler = BackfillScheduler(processor, batch_size=cfg.batch_size, batch_delay=cfg.batch_delay,
                                      progress_every=cfg.progress_every)
        return await scheduler.backfill(cfg.start_slot if from_slot is None else from_slot, to_slot)
    finally:
        await _close_all(sink, source)


async def run_diag(cfg: IndexerConfig):
    source = build_source(cfg)
    try:
        print(f"[DIAG] RPC endpoint: {cfg.rpc_http}")
        version, slot = await check_connection(source)
        print(f"[DIAG] RPC OK. solana-core={version.get('solana-core', '?')} current_slot={slot}")
        if cfg.watch_programs:
            print(f"[DIAG] watching programs: {sorted(cfg.watch_programs)}")
        else:
            print("[DIAG] no watch-list: every program matches")
        print(f"[DIAG] classifying instructions of {cfg.primary_program or '(none)'}; start slot {cfg.start_slot}")
    finally:
        await source.close()


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Solana slot indexer: backfill + live tail, Raydium instruction classification, swap records"
    )
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("diag", help="One-shot connectivity check (getVersion + getSlot)")
    sub.add_parser("run", help="Backfill from START_SLOT, then follow new slots until SIGINT/SIGTERM")

    p_bf = sub.add_parser("backfill", help="Backfill a slot range and exit")
    p_bf.add_argument("--from", dest="from_slot", type=int, default=None,
                      help="First slot (default: START_SLOT)")
    p_bf.add_argument("--to", dest="to_slot", type=int, default=None,
                      help="Last slot, inclusive (default: current slot)")
    return p


def main(argv=None):
    parser = build_argparser()
    args = parser.parse_args(argv)
    try:
        cfg = load_env()
    except ConfigError as e:
        raise SystemExit(f"config error: {e}")
    setup_logging(cfg.debug)

    try:
        # default to diag if no command provided
        if not args.cmd or args.cmd == "diag":
            return asyncio.run(run_diag(cfg))
        elif args.cmd == "run":
            return asyncio.run(run_service(cfg))
        elif args.cmd == "backfill":
            asyncio.run(run_backfill(cfg, args.from_slot, args.to_slot))
            return None
        else:
            parser.print_help()
            sys.exit(2)
    except StartupError as e:
        log.error("indexer failed to start: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("interrupted")


if __name__ == "__main__":
    main()
