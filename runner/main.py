"""
Execution engine entry point.

Wires config, stores, recommendation client, orchestrator, scheduler and
the control server, then blocks until SIGINT/SIGTERM.

    python -m runner.main                      # scheduler + control server
    python -m runner.main --once               # one manual iteration, then exit
    python -m runner.main --preview 0xabc...   # dry-run for one account
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ai.recommendation_client import RecommendationClient
from ai.telemetry import ProviderTelemetry
from analytics.execution_history import ExecutionHistory
from core.exceptions import ConfigError, EngineError
from core.orchestrator import ExecutionOrchestrator
from infra.alerting import AlertService
from infra.config import AppConfig, load_config
from infra.control_server import ControlApi, ControlServer
from infra.delegation_store import JsonDelegationStore, JsonPortfolioSource
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder
from runner.scheduler import ExecutionScheduler

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: AppConfig
    store: JsonDelegationStore
    history: ExecutionHistory
    telemetry: ProviderTelemetry
    metrics: MetricsRecorder
    client: RecommendationClient
    orchestrator: ExecutionOrchestrator
    scheduler: ExecutionScheduler
    control_api: ControlApi


def configure_logging(config: AppConfig) -> None:
    handlers = [logging.StreamHandler()]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


def build_engine(config: AppConfig) -> Engine:
    """Assemble every component from config. No threads are started."""
    store = JsonDelegationStore(config.storage.state_file)
    history = ExecutionHistory(config.storage.history_db)
    metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)
    telemetry = ProviderTelemetry(
        max_entries=config.recommendation.telemetry_max_entries, metrics=metrics
    )
    client = RecommendationClient(
        providers=config.recommendation.provider_configs(),
        retry_policy=config.recommendation.retry_policy(),
        telemetry=telemetry,
        call_log=history if config.storage.log_recommendation_calls else None,
    )
    orchestrator = ExecutionOrchestrator(
        delegations=store,
        portfolios=JsonPortfolioSource(store),
        recommender=client,
        history=history,
        alerts=AlertService.from_settings(config.alerts),
        metrics=metrics,
    )
    scheduler = ExecutionScheduler(
        orchestrator,
        store,
        interval_ms=config.scheduler.interval_ms,
        jitter_pct=config.scheduler.jitter_pct,
        metrics=metrics,
    )
    return Engine(
        config=config,
        store=store,
        history=history,
        telemetry=telemetry,
        metrics=metrics,
        client=client,
        orchestrator=orchestrator,
        scheduler=scheduler,
        control_api=ControlApi(scheduler, telemetry, history, orchestrator),
    )


def instance_lock(config: AppConfig) -> SingleInstanceLock:
    """Lock shared by every process that bills the delegations in one state file."""
    return SingleInstanceLock("execution-engine", lock_dir=str(Path(config.storage.state_file).parent))


def serve(engine: Engine) -> None:
    config = engine.config
    lock = instance_lock(config)
    if not lock.acquire():
        sys.exit(1)

    engine.metrics.start()

    server: Optional[ControlServer] = None
    if config.control_server.enabled:
        server = ControlServer(engine.control_api, port=config.control_server.port, host=config.control_server.host)
        server.start()

    if config.scheduler.enabled:
        engine.scheduler.start()
    else:
        logger.info("Scheduler disabled by config; use POST /scheduler/start to enable")

    shutdown = threading.Event()

    def _handle_stop(signum, _frame):
        logger.warning(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)

    shutdown.wait()
    engine.scheduler.stop()
    if server is not None:
        server.stop()
    lock.release()
    logger.info("Execution engine stopped cleanly.")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Automated execution engine")
    parser.add_argument("--config", default=None, help="Path to app.yaml (default: config/app.yaml)")
    parser.add_argument("--once", action="store_true", help="Run one iteration and exit")
    parser.add_argument("--preview", metavar="ACCOUNT", help="Dry-run one account and print the result")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    configure_logging(config)
    logger.info("Starting execution engine")
    engine = build_engine(config)

    if args.preview:
        try:
            result = engine.orchestrator.preview(args.preview)
        except EngineError as e:
            logger.error(f"Preview failed: {e}")
            return 1
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    if args.once:
        lock = instance_lock(config)
        if not lock.acquire():
            return 1
        try:
            summary = engine.scheduler.run_once("manual")
        finally:
            lock.release()
        print(json.dumps(summary.to_dict(), indent=2))
        return 0 if summary.error_count == 0 else 1

    serve(engine)
    return 0


if __name__ == "__main__":
    sys.exit(main())
