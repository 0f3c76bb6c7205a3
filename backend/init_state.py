"""
Yield Pilot - State Initialization
Creates a new allocation record with the agent key as its authority and
prints the state id to copy into .env as YIELD_STATE_ID.
"""

import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from yield_pilot.bootstrap import build_ledger
from yield_pilot.infrastructure.config import SecretsManager, YieldPilotConfig
from yield_pilot.infrastructure.errors import YieldPilotError
from yield_pilot.infrastructure.ledger import AuthorityCredential

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> int:
    config = YieldPilotConfig.from_env()
    secrets = SecretsManager()

    try:
        config.validate_initializer(secrets)
        credential = AuthorityCredential.from_private_key(secrets.get("AGENT_PRIVATE_KEY"))

        print("Creating allocation state...")
        print("Program:", config.ledger.program_address)
        print("Authority:", credential.address)

        handle = build_ledger(config).initialize(credential)
    except YieldPilotError as e:
        logger.error(f"Initialization failed: {e.message}")
        return 1

    print("")
    print("✅ COPY THIS VALUE INTO YOUR .env FILE:")
    print(f"YIELD_STATE_ID={handle.state_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
