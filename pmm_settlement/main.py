"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys

from pmm_settlement.app import SettlementApp, build_alert_manager
from pmm_settlement.config.config import Settings
from pmm_settlement.config.config_validator import validate_and_log
from pmm_settlement.infra.logging_cfg import build_logger
from pmm_settlement.monitoring.metrics_rich import RichMetrics, start_metrics_server

log = build_logger("pmm_settlement", file_path=os.getenv("LOG_FILE", "pmm_settlement.log") or None)


async def main() -> None:
    cfg = Settings.load()

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    alert_manager = build_alert_manager(cfg)
    metrics = RichMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    app = SettlementApp(cfg, metrics=metrics, alert_manager=alert_manager)
    log.info(json.dumps({"event": "startup", "config": cfg.dump()}, default=str))
    await app.notifier.startup(cfg.rebalance_enabled, sorted(cfg.evm_rpc_urls))

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(app.run())

    def stop_all() -> None:
        if not run_task.done():
            run_task.cancel()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
        if not run_task.done():
            run_task.cancel()
            try:
                await run_task
            except asyncio.CancelledError:
                pass
    finally:
        # close() only drains in-flight deliveries
        await app.notifier.shutdown("signal_received")
        await alert_manager.close()
        log.info("Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nSettlement engine stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
