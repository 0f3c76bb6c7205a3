"""
Yield Pilot - Entry Point
Runs one reconciliation cycle, or keeps running them on an interval
when YIELD_PILOT_INTERVAL_MINUTES is set.
"""

import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from yield_pilot.bootstrap import build_agent
from yield_pilot.infrastructure.config import SecretsManager, YieldPilotConfig
from yield_pilot.infrastructure.errors import ConfigurationError, YieldPilotError
from yield_pilot.scheduler import CycleScheduler
from yield_pilot.sentry_config import init_sentry

logger = logging.getLogger(__name__)


async def main() -> int:
    config = YieldPilotConfig.from_env()
    secrets = SecretsManager()

    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config.validate_agent(secrets)
    except ConfigurationError as e:
        logger.error("❌ Configuration invalid:\n  " + "\n  ".join(e.problems))
        return 2

    init_sentry(config.monitoring.sentry_dsn, config.environment.value, component="agent")
    agent = build_agent(config, secrets)

    if config.scheduler.interval_minutes <= 0:
        report = await agent.run_cycle(deadline_seconds=config.scheduler.cycle_deadline_seconds)
        print(json.dumps(report.to_dict(), indent=2))
        try:
            report.raise_for_failure()
        except YieldPilotError as e:
            logger.error(f"❌ {e.message}")
            return 1
        return 0

    scheduler = CycleScheduler(
        agent,
        config.scheduler.interval_minutes,
        deadline_seconds=config.scheduler.cycle_deadline_seconds,
    )
    await scheduler.run_once()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n👋 Yield Pilot stopped")
