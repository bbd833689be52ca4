#!/usr/bin/env python3
"""
Vouch Escrow Coordinator - Production Entry Point
Starts the API server and the timeout scheduler
"""

import argparse
import asyncio
import json
import signal
import sys
import threading
from typing import Optional

from .api.production_server import create_production_server
from .config.production import ProductionConfig, get_config
from .database.escrow_store import EscrowStore
from .database.production_db import ProductionDatabase
from .integrations.fiat_provider import XenditClient
from .integrations.ledger_gateway import LedgerGateway
from .integrations.ledger_rpc import JsonRpcLedgerClient
from .services.coordinator import ReconciliationCoordinator
from .services.payments import PaymentService
from .services.reconciliation import ReconciliationService
from .services.scheduler import TimeoutScheduler
from .utils.production_logger import LoggerFactory


class Application:
    """Explicitly wired object graph; nothing here is a process-wide singleton."""

    def __init__(self, config: ProductionConfig):
        self.config = config
        self.logger = LoggerFactory.get_logger('vouch.main')

        self.db = ProductionDatabase(config)
        self.store = EscrowStore(self.db, config.timeouts)

        self.gateway: Optional[LedgerGateway] = None
        if config.ledger.enabled:
            self.gateway = LedgerGateway(JsonRpcLedgerClient(config.ledger), config.ledger)

        self.coordinator = ReconciliationCoordinator(self.store, self.gateway, config)

        self.reconciliation: Optional[ReconciliationService] = None
        if self.gateway is not None:
            self.reconciliation = ReconciliationService(
                self.store, self.gateway,
                heal=config.scheduler.reconciliation_heal,
                batch_size=config.scheduler.batch_size)

        self.payments = PaymentService(self.coordinator, XenditClient(config.fiat), config)
        self.scheduler = TimeoutScheduler(self.coordinator, config, self.reconciliation)
        self.api_server = create_production_server(config, self.coordinator, self.payments,
                                                   self.reconciliation, self.scheduler)

    def _start_api_server(self):
        try:
            self.api_server.run()
        except Exception as e:
            self.logger.error("API server failed", error=str(e))

    def run_once(self) -> int:
        reports = asyncio.run(self.scheduler.run_all_now())
        print(json.dumps([report.to_dict() for report in reports], indent=2))
        return 1 if any(report.failed for report in reports) else 0

    def run(self):
        self.logger.info("Starting Vouch Escrow Coordinator",
                         version=self.config.version,
                         environment=self.config.environment,
                         ledger_enabled=self.gateway is not None,
                         scheduler_enabled=self.config.scheduler.enabled)

        def signal_handler(signum, frame):
            self.logger.info("Received shutdown signal", signal=signum)
            self.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        if not self.config.scheduler.enabled:
            self.api_server.run()
            return

        api_thread = threading.Thread(target=self._start_api_server, name='vouch-api', daemon=True)
        api_thread.start()
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()
        self.db.close()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='vouch', description='Vouch escrow lifecycle coordinator')
    parser.add_argument('--once', action='store_true',
                        help='run every scheduler sweep once and exit')
    parser.add_argument('--no-scheduler', action='store_true',
                        help='serve the API without running sweeps')
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    try:
        config = get_config()
        LoggerFactory.set_config(config)
        if args.no_scheduler:
            config.scheduler.enabled = False
        app = Application(config)
    except Exception as e:
        logger = LoggerFactory.get_logger('vouch.main')
        logger.critical("Failed to start escrow coordinator", error=str(e))
        sys.exit(1)

    if args.once:
        sys.exit(app.run_once())
    app.run()


if __name__ == '__main__':
    main()
