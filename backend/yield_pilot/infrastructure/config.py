"""
Configuration Management for Yield Pilot
Environment-based configuration with secrets handling and pre-flight validation

Features:
- Environment-based config (dev/prod)
- Secrets management
- Tracked protocol list from JSON
- Validation that fails before any core logic runs
"""

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from web3 import Web3

from yield_pilot.infrastructure.errors import ConfigurationError
from yield_pilot.models import MAX_PROTOCOL_ID, BpsRounding, TrackedProtocol

logger = logging.getLogger("Config")

STATE_ID_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
PRIVATE_KEY_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

RATE_SOURCE_KINDS = ("jito", "x402", "fixed")

# EIP-155 chain ids for the x402 network names we accept
NETWORK_CHAIN_IDS = {
    "base": 8453,
    "base-sepolia": 84532,
    "ethereum": 1,
    "sepolia": 11155111,
}


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


@dataclass
class LedgerConfig:
    """Ledger program connection"""
    rpc_url: str = ""
    program_address: str = ""
    state_id: str = ""
    chain_id: int = 8453

    # Per-call bound, separate from the finality wait
    call_timeout: float = 15.0
    finality_timeout: float = 120.0
    gas_limit: int = 120000


@dataclass
class RateSourceConfig:
    """External rate providers"""
    jito_url: str = "https://kobe.mainnet.jito.network/api/v1/stake_pool_stats"
    window_hours: int = 48
    request_timeout: float = 10.0
    protocols: List[TrackedProtocol] = field(default_factory=list)


@dataclass
class PaymentConfig:
    """x402 payment settings, shared by the paying agent and the gate server"""
    network: str = "base"
    receiver: str = ""
    asset: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"  # USDC on Base
    asset_name: str = "USD Coin"
    asset_version: str = "2"
    currency: str = "USDC"
    price_amount: str = "10000"  # 0.01 USDC (6 decimals)
    max_timeout_seconds: int = 300
    max_payment_amount: Optional[int] = None
    facilitator_url: str = ""
    rpc_url: str = ""  # payment network RPC, enables payer balance checks
    request_timeout: float = 15.0
    server_port: int = 4021

    @property
    def chain_id(self) -> Optional[int]:
        return NETWORK_CHAIN_IDS.get(self.network)


@dataclass
class PolicyConfig:
    """Switch policy parameters"""
    threshold_percent: float = 0.5
    rounding: BpsRounding = BpsRounding.HALF_AWAY_FROM_ZERO


@dataclass
class MonitoringConfig:
    """Monitoring configuration"""
    log_level: str = "INFO"
    sentry_dsn: Optional[str] = None


@dataclass
class SchedulerConfig:
    """0 means run a single cycle and exit"""
    interval_minutes: int = 0
    cycle_deadline_seconds: Optional[float] = None


@dataclass
class YieldPilotConfig:
    """Main application configuration"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    rates: RateSourceConfig = field(default_factory=RateSourceConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    # Parse problems found while reading the environment
    problems: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "YieldPilotConfig":
        """Create configuration from environment variables"""
        env = os.environ if environ is None else environ
        problems: List[str] = []
        reader = _EnvReader(env, problems)

        name = env.get("YIELD_PILOT_ENV", "development").lower()
        config = cls(
            environment=Environment(name) if name in [e.value for e in Environment] else Environment.DEVELOPMENT,
            debug=env.get("DEBUG", "true").lower() == "true",
            problems=problems,
        )

        config.ledger = LedgerConfig(
            rpc_url=env.get("LEDGER_RPC_URL", ""),
            program_address=env.get("YIELD_PILOT_PROGRAM_ADDRESS", ""),
            state_id=env.get("YIELD_STATE_ID", ""),
            chain_id=reader.get_int("CHAIN_ID", 8453),
            call_timeout=reader.get_float("LEDGER_CALL_TIMEOUT", 15.0),
            finality_timeout=reader.get_float("LEDGER_FINALITY_TIMEOUT", 120.0),
            gas_limit=reader.get_int("LEDGER_GAS_LIMIT", 120000),
        )

        config.rates = RateSourceConfig(
            jito_url=env.get("JITO_API_URL", RateSourceConfig.jito_url),
            window_hours=reader.get_int("APY_WINDOW_HOURS", 48),
            request_timeout=reader.get_float("RATE_SOURCE_TIMEOUT", 10.0),
            protocols=_parse_protocols(env.get("YIELD_PILOT_PROTOCOLS", ""), problems),
        )

        max_payment = env.get("X402_MAX_PAYMENT_AMOUNT")
        config.payments = PaymentConfig(
            network=env.get("X402_NETWORK", "base"),
            receiver=env.get("X402_RECEIVER", ""),
            asset=env.get("X402_ASSET", PaymentConfig.asset),
            asset_name=env.get("X402_ASSET_NAME", "USD Coin"),
            asset_version=env.get("X402_ASSET_VERSION", "2"),
            currency=env.get("X402_CURRENCY", "USDC"),
            price_amount=env.get("X402_PRICE_AMOUNT", "10000"),
            max_timeout_seconds=reader.get_int("X402_MAX_TIMEOUT_SECONDS", 300),
            max_payment_amount=reader.get_int("X402_MAX_PAYMENT_AMOUNT", 0) if max_payment else None,
            facilitator_url=env.get("FACILITATOR_URL", "").rstrip("/"),
            rpc_url=env.get("X402_RPC_URL", ""),
            request_timeout=reader.get_float("X402_REQUEST_TIMEOUT", 15.0),
            server_port=reader.get_int("X402_SERVER_PORT", 4021),
        )

        rounding = env.get("BPS_ROUNDING", BpsRounding.HALF_AWAY_FROM_ZERO.value).lower()
        if rounding not in [r.value for r in BpsRounding]:
            problems.append(f"BPS_ROUNDING must be one of {[r.value for r in BpsRounding]}, got '{rounding}'")
            rounding = BpsRounding.HALF_AWAY_FROM_ZERO.value
        config.policy = PolicyConfig(
            threshold_percent=reader.get_float("APY_SWITCH_THRESHOLD", 0.5),
            rounding=BpsRounding(rounding),
        )

        config.monitoring = MonitoringConfig(
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            sentry_dsn=env.get("SENTRY_DSN") or None,
        )

        deadline = env.get("CYCLE_DEADLINE_SECONDS")
        config.scheduler = SchedulerConfig(
            interval_minutes=reader.get_int("YIELD_PILOT_INTERVAL_MINUTES", 0),
            cycle_deadline_seconds=reader.get_float("CYCLE_DEADLINE_SECONDS", 0.0) if deadline else None,
        )

        if config.environment == Environment.PRODUCTION:
            config.debug = False
            if "LOG_LEVEL" not in env:
                config.monitoring.log_level = "WARNING"

        return config

    # ============================================
    # VALIDATION
    # ============================================

    def validate_agent(self, secrets: "SecretsManager") -> None:
        """Pre-flight checks for the reconciliation agent"""
        problems = list(self.problems)
        problems += self._ledger_problems()

        if not secrets.has("AGENT_PRIVATE_KEY"):
            problems.append("AGENT_PRIVATE_KEY is required")
        elif not PRIVATE_KEY_PATTERN.match(secrets.get("AGENT_PRIVATE_KEY")):
            problems.append("AGENT_PRIVATE_KEY is malformed")

        if not self.rates.protocols:
            problems.append("YIELD_PILOT_PROTOCOLS is required")
        elif len(self.rates.protocols) < 2:
            problems.append("YIELD_PILOT_PROTOCOLS must list at least two protocols")
        if self.rates.window_hours <= 0:
            problems.append("APY_WINDOW_HOURS must be positive")
        if self.policy.threshold_percent < 0 or not math.isfinite(self.policy.threshold_percent):
            problems.append("APY_SWITCH_THRESHOLD must be a non-negative number")

        if any(p.source == "x402" for p in self.rates.protocols):
            if not secrets.has("PAYER_PRIVATE_KEY"):
                problems.append("PAYER_PRIVATE_KEY is required when a protocol uses an x402 source")
            elif not PRIVATE_KEY_PATTERN.match(secrets.get("PAYER_PRIVATE_KEY")):
                problems.append("PAYER_PRIVATE_KEY is malformed")
            if self.payments.chain_id is None:
                problems.append(f"X402_NETWORK '{self.payments.network}' is not supported")

        _raise_if(problems)

    def validate_initializer(self, secrets: "SecretsManager") -> None:
        """Pre-flight checks for the one-off state initialization"""
        problems = list(self.problems)
        if not self.ledger.rpc_url:
            problems.append("LEDGER_RPC_URL is required")
        if not Web3.is_address(self.ledger.program_address):
            problems.append("YIELD_PILOT_PROGRAM_ADDRESS is missing or not an address")
        if not secrets.has("AGENT_PRIVATE_KEY"):
            problems.append("AGENT_PRIVATE_KEY is required")
        _raise_if(problems)

    def validate_gate(self, secrets: "SecretsManager") -> None:
        """Pre-flight checks for the paid APY server"""
        problems = list(self.problems)
        if self.payments.chain_id is None:
            problems.append(f"X402_NETWORK '{self.payments.network}' is not supported")
        if not Web3.is_address(self.payments.receiver):
            problems.append("X402_RECEIVER is missing or not an address")
        if not Web3.is_address(self.payments.asset):
            problems.append("X402_ASSET is not an address")
        if not re.fullmatch(r"[0-9]+", self.payments.price_amount) or int(self.payments.price_amount) <= 0:
            problems.append("X402_PRICE_AMOUNT must be a positive integer in atomic units")
        if not self.payments.facilitator_url:
            problems.append("FACILITATOR_URL is required")
        _raise_if(problems)

    def _ledger_problems(self) -> List[str]:
        problems = []
        if not self.ledger.rpc_url:
            problems.append("LEDGER_RPC_URL is required")
        if not Web3.is_address(self.ledger.program_address):
            problems.append("YIELD_PILOT_PROGRAM_ADDRESS is missing or not an address")
        if not STATE_ID_PATTERN.match(self.ledger.state_id):
            problems.append("YIELD_STATE_ID must be a 0x-prefixed 32-byte hex string")
        if self.ledger.call_timeout <= 0 or self.ledger.finality_timeout <= 0:
            problems.append("Ledger timeouts must be positive")
        return problems

    def to_dict(self) -> Dict:
        """Convert to dictionary (hiding secrets)"""
        def sanitize(obj):
            if isinstance(obj, dict):
                return {k: sanitize(v) for k, v in obj.items() if "key" not in k.lower() and "dsn" not in k.lower()}
            elif isinstance(obj, list):
                return [sanitize(v) for v in obj]
            elif hasattr(obj, '__dataclass_fields__'):
                return sanitize({k: getattr(obj, k) for k in obj.__dataclass_fields__})
            elif isinstance(obj, Enum):
                return obj.value
            else:
                return obj

        return sanitize(self)


# ============================================
# SECRETS MANAGEMENT
# ============================================

class SecretsManager:
    """
    Holds signing keys and API keys apart from the plain config,
    so they never end up in logs or config dumps.
    """

    SECRET_KEYS = [
        "AGENT_PRIVATE_KEY",  # ledger authority, NEVER log this!
        "PAYER_PRIVATE_KEY",  # pays for x402 reads
        "FACILITATOR_API_KEY",
    ]

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self._secrets: Dict[str, str] = {}
        self._load_from_env(os.environ if environ is None else environ)

    def _load_from_env(self, environ: Dict[str, str]):
        for key in self.SECRET_KEYS:
            value = environ.get(key)
            if value:
                self._secrets[key] = value

    def get(self, key: str, default: str = None) -> Optional[str]:
        return self._secrets.get(key, default)

    def set(self, key: str, value: str):
        """Set a secret value (runtime only)"""
        self._secrets[key] = value

    def has(self, key: str) -> bool:
        return key in self._secrets


# ============================================
# HELPERS
# ============================================

class _EnvReader:
    """Typed env lookups that record malformed values instead of raising"""

    def __init__(self, env: Dict[str, str], problems: List[str]):
        self.env = env
        self.problems = problems

    def get_int(self, key: str, default: int) -> int:
        raw = self.env.get(key)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            self.problems.append(f"{key} must be an integer, got '{raw}'")
            return default

    def get_float(self, key: str, default: float) -> float:
        raw = self.env.get(key)
        if raw is None or raw == "":
            return default
        try:
            return float(raw)
        except ValueError:
            self.problems.append(f"{key} must be a number, got '{raw}'")
            return default


def _parse_protocols(raw: str, problems: List[str]) -> List[TrackedProtocol]:
    """
    Parse YIELD_PILOT_PROTOCOLS, e.g.
    [{"id": 0, "name": "Marinade", "source": "fixed", "apy": 4.2},
     {"id": 1, "name": "Jito", "source": "jito"},
     {"id": 2, "name": "Jito (paid)", "source": "x402", "url": "http://localhost:4021/apy/jito"}]
    """
    if not raw:
        return []
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as e:
        problems.append(f"YIELD_PILOT_PROTOCOLS is not valid JSON: {e}")
        return []
    if not isinstance(entries, list):
        problems.append("YIELD_PILOT_PROTOCOLS must be a JSON list")
        return []

    protocols: List[TrackedProtocol] = []
    seen = set()
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}] must be an object")
            continue
        pid = entry.get("id")
        name = entry.get("name")
        source = entry.get("source")
        if isinstance(pid, bool) or not isinstance(pid, int) or not 0 <= pid <= MAX_PROTOCOL_ID:
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].id must be an integer in 0..{MAX_PROTOCOL_ID}")
            continue
        if pid in seen:
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].id {pid} is duplicated")
            continue
        if not isinstance(name, str) or not name:
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].name is required")
            continue
        if source not in RATE_SOURCE_KINDS:
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].source must be one of {RATE_SOURCE_KINDS}")
            continue

        url = entry.get("url")
        apy = entry.get("apy")
        if source == "x402" and not (isinstance(url, str) and url.startswith("http")):
            problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].url is required for x402 sources")
            continue
        if source == "fixed":
            if isinstance(apy, bool) or not isinstance(apy, (int, float)) or not math.isfinite(apy) or apy < 0:
                problems.append(f"YIELD_PILOT_PROTOCOLS[{i}].apy must be a non-negative number for fixed sources")
                continue
            apy = float(apy)
        else:
            apy = None

        seen.add(pid)
        protocols.append(TrackedProtocol(id=pid, name=name, source=source, url=url, apy_percent=apy))
    return protocols


def _raise_if(problems: List[str]) -> None:
    if problems:
        for problem in problems:
            logger.error(f"Config: {problem}")
        raise ConfigurationError(
            f"Invalid configuration ({len(problems)} problem(s)): " + "; ".join(problems),
            problems,
        )
