#!/usr/bin/env python3
"""
Domain and hosting order service - single event loop
Runs the HTTP API, payment webhook and provisioning worker in one asyncio loop
"""

import asyncio
import logging
import signal
import sys

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Prevent httpx from logging provider URLs on every request
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from config import WorkflowConfig
from database import PostgresWorkflowStore, close_connection_pool, init_database
from services.order_workflow import build_order_workflow
from webhook_handler import start_webhook_server, stop_webhook_server

# Global shutdown flag
shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")

async def main_loop() -> bool:
    """Start everything, then idle until a shutdown signal arrives"""
    config = WorkflowConfig()
    if not config.database_url:
        logger.error("❌ DATABASE_URL not found in environment")
        sys.exit(1)

    config.log_summary()
    workflow = None
    webhook_runner = None

    try:
        logger.info("🔄 Initializing database schema...")
        await init_database()

        workflow = build_order_workflow(config, PostgresWorkflowStore())
        await workflow.start()

        webhook_runner = await start_webhook_server(workflow, config)
        logger.info("🌐 Payment webhook endpoints: /payment-events, /stripe-webhook")

        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:
                logger.info("⏰ Order service running")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Application runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        sys.exit(1)
    finally:
        if webhook_runner is not None:
            await stop_webhook_server()
        if workflow is not None:
            await workflow.stop()
        close_connection_pool()
        logger.info("✅ Cleanup completed")

def main():
    """Main entry point"""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting domain & hosting order service...")

    try:
        result = asyncio.run(main_loop())
        logger.info("✅ Service stopped normally" if result else "⚠️ Service stopped with error")
        return result
    except Exception as e:
        logger.error(f"💥 Critical service failure: {e}")
        sys.exit(1)

if __name__ == '__main__':
    main()
