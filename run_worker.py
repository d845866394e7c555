"""
Recurring Schedule Background Worker Runner
Run this as a separate process: python run_worker.py
(equivalent to: arq marketplace.worker.WorkerSettings)
"""

import logging
import sys

from arq import run_worker

from marketplace.worker import WorkerSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    logger.info("🚀 Starting Recurring Schedule Worker...")
    try:
        run_worker(WorkerSettings)
    except KeyboardInterrupt:
        logger.info("👋 Schedule worker stopped by user")
    except Exception as e:
        logger.error(f"❌ Schedule worker crashed: {e}")
        sys.exit(1)
