"""
Paid APY server - Entry Point
Serves /apy/jito behind an x402 payment gate.

Flow:
- Client requests /apy/jito
- Server responds 402 Payment Required with a payment requirement
- Client pays and retries with an X-PAYMENT header
- Server verifies and settles the payment, then responds 200 with the APY
"""

import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

load_dotenv()

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from yield_pilot.api import create_app
from yield_pilot.bootstrap import build_facilitator
from yield_pilot.infrastructure.config import SecretsManager, YieldPilotConfig
from yield_pilot.infrastructure.errors import ConfigurationError
from yield_pilot.sentry_config import init_sentry

logger = logging.getLogger(__name__)


def main() -> int:
    config = YieldPilotConfig.from_env()
    secrets = SecretsManager()

    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config.validate_gate(secrets)
    except ConfigurationError as e:
        logger.error("❌ Configuration invalid:\n  " + "\n  ".join(e.problems))
        return 2

    init_sentry(config.monitoring.sentry_dsn, config.environment.value, component="paid_apy_server")
    app = create_app(config, build_facilitator(config.payments, secrets))

    port = config.payments.server_port
    logger.info(f"Paid APY server listening on http://localhost:{port}")
    logger.info(f"Protected endpoint: http://localhost:{port}/apy/jito")
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level=config.monitoring.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
