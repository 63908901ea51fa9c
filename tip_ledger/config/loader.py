"""
Configuration management and loading.

Handles ledger settings: store locations, the creator/platform revenue
split, identity matching, verification paging, currency display and
logging.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Set

import yaml

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class StorageConfig:
    """Locations of the ledger and verification stores."""
    ledger_db: str = "tip_ledger.db"
    verification_db: str = "tip_ledger_verification.db"
    busy_timeout_seconds: float = 30.0

    def __post_init__(self):
        if not self.ledger_db:
            raise ValueError("ledger_db must not be empty")
        if not self.verification_db:
            raise ValueError("verification_db must not be empty")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds must be > 0")


@dataclass(frozen=True)
class RevenueSplitConfig:
    """Creator/platform split applied to every tip.

    The platform receives the complement of creator_share_percent plus
    all rounding residue.
    """
    creator_share_percent: Decimal = Decimal("70")
    percentage_tolerance: Decimal = Decimal("0.01")

    def __post_init__(self):
        if not self.creator_share_percent.is_finite() or not Decimal("0") <= self.creator_share_percent <= Decimal("100"):
            raise ValueError("creator_share_percent must be between 0 and 100")
        if not self.percentage_tolerance.is_finite() or self.percentage_tolerance < 0:
            raise ValueError("percentage_tolerance cannot be negative")


@dataclass(frozen=True)
class MatchingConfig:
    """Fuzzy matching of unregistered payees to verified identities."""
    name_similarity_threshold: float = 0.88

    def __post_init__(self):
        if not 0 < self.name_similarity_threshold <= 1:
            raise ValueError("name_similarity_threshold must be in (0, 1]")


@dataclass(frozen=True)
class VerificationConfig:
    batch_size: int = 500

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")


@dataclass(frozen=True)
class CurrencyConfig:
    symbol: str = "£"


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    def __post_init__(self):
        if self.level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(VALID_LOG_LEVELS)}")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    revenue_split: RevenueSplitConfig = field(default_factory=RevenueSplitConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> LedgerConfig:
    """Configuration used when no file is given."""
    return LedgerConfig()


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Strict validation: unknown keys and out-of-range values are errors,
    so a typo can never silently change the revenue split.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'storage', 'revenue_split', 'matching', 'verification', 'currency', 'logging'}
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    # The split decides where money goes; never fall back to a default for it
    if 'revenue_split' not in raw_config:
        raise ValueError("Missing required 'revenue_split' section")

    storage_data = _section(raw_config, 'storage')
    _reject_unknown(storage_data, {'ledger_db', 'verification_db', 'busy_timeout_seconds'}, "storage")
    storage = StorageConfig(
        ledger_db=str(storage_data.get('ledger_db', StorageConfig.ledger_db)),
        verification_db=str(storage_data.get('verification_db', StorageConfig.verification_db)),
        busy_timeout_seconds=_number(
            storage_data.get('busy_timeout_seconds', StorageConfig.busy_timeout_seconds),
            "storage.busy_timeout_seconds",
        ),
    )

    split_data = _section(raw_config, 'revenue_split')
    _reject_unknown(split_data, {'creator_share_percent', 'percentage_tolerance'}, "revenue_split")
    if 'creator_share_percent' not in split_data:
        raise ValueError("Missing required 'creator_share_percent' in revenue_split")
    revenue_split = RevenueSplitConfig(
        creator_share_percent=_decimal(split_data['creator_share_percent'], "revenue_split.creator_share_percent"),
        percentage_tolerance=_decimal(
            split_data.get('percentage_tolerance', "0.01"), "revenue_split.percentage_tolerance"
        ),
    )

    matching_data = _section(raw_config, 'matching')
    _reject_unknown(matching_data, {'name_similarity_threshold'}, "matching")
    matching = MatchingConfig(
        name_similarity_threshold=_number(
            matching_data.get('name_similarity_threshold', MatchingConfig.name_similarity_threshold),
            "matching.name_similarity_threshold",
        )
    )

    verification_data = _section(raw_config, 'verification')
    _reject_unknown(verification_data, {'batch_size'}, "verification")
    batch_size = verification_data.get('batch_size', VerificationConfig.batch_size)
    if isinstance(batch_size, bool) or not isinstance(batch_size, int):
        raise ValueError("'batch_size' in verification must be an integer")
    verification = VerificationConfig(batch_size=batch_size)

    currency_data = _section(raw_config, 'currency')
    _reject_unknown(currency_data, {'symbol'}, "currency")
    symbol = currency_data.get('symbol', CurrencyConfig.symbol)
    if not isinstance(symbol, str):
        raise ValueError("'symbol' in currency must be a string")
    currency = CurrencyConfig(symbol=symbol)

    logging_data = _section(raw_config, 'logging')
    _reject_unknown(logging_data, {'level', 'json'}, "logging")
    level = logging_data.get('level', LoggingConfig.level)
    if not isinstance(level, str):
        raise ValueError("'level' in logging must be a string")
    json_output = logging_data.get('json', LoggingConfig.json)
    if not isinstance(json_output, bool):
        raise ValueError("'json' in logging must be true or false")
    logging_config = LoggingConfig(level=level.upper(), json=json_output)

    return LedgerConfig(
        storage=storage,
        revenue_split=revenue_split,
        matching=matching,
        verification=verification,
        currency=currency,
        logging=logging_config,
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: Set[str], path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _decimal(value: Any, path: str) -> Decimal:
    """Parse a percentage as Decimal via its string form, so 70.1 stays 70.1."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not parsed.is_finite():
        raise ValueError(f"'{path}' must be a finite number")
    return parsed
