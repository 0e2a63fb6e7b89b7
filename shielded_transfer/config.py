"""
Configuration

Loads shielded_config.yaml (merged over defaults) and the wallet secrets
from the environment / .env file.
"""

import copy
import hashlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigError

GWEI = 10 ** 9

DEFAULT_CONFIG: Dict = {
    'engine': {
        'factory': None,
        'wallet_source': 'demowallet',
        'db_path': 'railgun-db',
        'artifacts_dir': 'artifacts',
        'poi_node_urls': ['https://ppoi-agg.horsewithsixlegs.xyz'],
        'network_name': 'Ethereum',
        'chain_id': 1,
        'txid_version': 'V2_PoseidonMerkle',
        'shutdown_timeout_seconds': 15.0,
    },
    'aggregation': {
        'quiescence_window_seconds': 5.0,
        'ceiling_timeout_seconds': 60.0,
        'queue_size': 1000,
    },
    'transfer': {
        'memo': 'Private transfer',
        'show_sender_address': True,
        'send_with_public_wallet': True,
        'confirmation_timeout_seconds': 600.0,
        'gas_limit_buffer_percent': 120,
        'default_gas_price_gwei': 30,
        'default_max_fee_gwei': 30,
        'default_priority_fee_gwei': 1.5,
        'retry_attempts': 3,
        'retry_delay_seconds': 2.0,
        'refresh_balances_first': True,
    },
    'history': {
        'db_path': 'run_history.db',
    },
    'logging': {
        'level': 'INFO',
        'file': None,
        'rotation': '10 MB',
    },
}

_HEX_KEY = re.compile(r'^[0-9a-fA-F]{64}$')


def derive_encryption_key(value: str) -> str:
    """
    Normalize the wallet encryption key

    A 64-char hex string is used as is; anything else is treated as a
    password and replaced by its SHA-256 hex digest.
    """
    if _HEX_KEY.match(value):
        return value
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def _deep_merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class AggregationSettings:
    quiescence_window: float = 5.0
    ceiling_timeout: float = 60.0
    queue_size: int = 1000

    def __post_init__(self):
        if self.quiescence_window <= 0:
            raise ConfigError("aggregation.quiescence_window_seconds must be positive")
        if self.ceiling_timeout <= self.quiescence_window:
            raise ConfigError(
                f"aggregation.ceiling_timeout_seconds ({self.ceiling_timeout}) must exceed "
                f"the quiescence window ({self.quiescence_window})"
            )
        if self.queue_size < 1:
            raise ConfigError("aggregation.queue_size must be >= 1")


@dataclass
class TransferSettings:
    memo: str = 'Private transfer'
    show_sender_address: bool = True
    send_with_public_wallet: bool = True
    confirmation_timeout: float = 600.0
    gas_limit_buffer_percent: int = 120
    default_gas_price: int = 30 * GWEI
    default_max_fee: int = 30 * GWEI
    default_priority_fee: int = int(1.5 * GWEI)
    retry_attempts: int = 3
    retry_delay: float = 2.0
    refresh_balances_first: bool = True

    def __post_init__(self):
        if self.gas_limit_buffer_percent < 100:
            raise ConfigError("transfer.gas_limit_buffer_percent must be >= 100")
        if self.retry_attempts < 1:
            raise ConfigError("transfer.retry_attempts must be >= 1")


@dataclass
class EngineSettings:
    factory: Optional[str] = None
    wallet_source: str = 'demowallet'
    db_path: str = 'railgun-db'
    artifacts_dir: str = 'artifacts'
    poi_node_urls: List[str] = field(default_factory=list)
    network_name: str = 'Ethereum'
    chain_id: int = 1
    txid_version: str = 'V2_PoseidonMerkle'
    shutdown_timeout: float = 15.0


@dataclass
class Credentials:
    """Wallet secrets; never logged"""
    mnemonic: str
    encryption_key: str
    rpc_url: str
    target_address: Optional[str] = None
    creation_block: Optional[int] = None

    def __repr__(self):
        return f"Credentials(rpc_url={self.rpc_url!r}, target_address={self.target_address!r})"


@dataclass
class Settings:
    engine: EngineSettings
    aggregation: AggregationSettings
    transfer: TransferSettings
    history_db_path: str
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    log_rotation: str = '10 MB'


def load_settings(config_path: str = "shielded_config.yaml") -> Settings:
    """
    Load settings from YAML, falling back to defaults

    Args:
        config_path: Path to the YAML config

    Returns:
        Settings
    """
    raw: Dict = {}
    path = Path(config_path)
    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        logger.info(f"Loaded config from {path}")
    else:
        logger.info(f"Config {path} not found, using defaults")

    config = _deep_merge(DEFAULT_CONFIG, raw)
    engine = config['engine']
    aggregation = config['aggregation']
    transfer = config['transfer']
    logging_cfg = config['logging']

    return Settings(
        engine=EngineSettings(
            factory=engine['factory'],
            wallet_source=engine['wallet_source'],
            db_path=engine['db_path'],
            artifacts_dir=engine['artifacts_dir'],
            poi_node_urls=list(engine['poi_node_urls'] or []),
            network_name=engine['network_name'],
            chain_id=int(engine['chain_id']),
            txid_version=engine['txid_version'],
            shutdown_timeout=float(engine['shutdown_timeout_seconds']),
        ),
        aggregation=AggregationSettings(
            quiescence_window=float(aggregation['quiescence_window_seconds']),
            ceiling_timeout=float(aggregation['ceiling_timeout_seconds']),
            queue_size=int(aggregation['queue_size']),
        ),
        transfer=TransferSettings(
            memo=transfer['memo'],
            show_sender_address=bool(transfer['show_sender_address']),
            send_with_public_wallet=bool(transfer['send_with_public_wallet']),
            confirmation_timeout=float(transfer['confirmation_timeout_seconds']),
            gas_limit_buffer_percent=int(transfer['gas_limit_buffer_percent']),
            default_gas_price=int(float(transfer['default_gas_price_gwei']) * GWEI),
            default_max_fee=int(float(transfer['default_max_fee_gwei']) * GWEI),
            default_priority_fee=int(float(transfer['default_priority_fee_gwei']) * GWEI),
            retry_attempts=int(transfer['retry_attempts']),
            retry_delay=float(transfer['retry_delay_seconds']),
            refresh_balances_first=bool(transfer['refresh_balances_first']),
        ),
        history_db_path=config['history']['db_path'],
        log_level=logging_cfg['level'],
        log_file=logging_cfg['file'],
        log_rotation=logging_cfg['rotation'],
    )


def load_credentials(require_target: bool = False, env_file: Optional[str] = None) -> Credentials:
    """
    Read wallet secrets from the environment (.env is loaded first)

    Args:
        require_target: Also require TARGET_0ZK_ADDRESS (transfers)
        env_file: Optional explicit .env path

    Returns:
        Credentials

    Raises:
        ConfigError: listing every missing variable
    """
    load_dotenv(env_file)

    required = ['MNEMONIC', 'ENCRYPTION_KEY', 'RPC_URL']
    if require_target:
        required.append('TARGET_0ZK_ADDRESS')

    missing = [name for name in required if not os.getenv(name)]
    if missing:
        raise ConfigError(f"Missing env variables: {', '.join(missing)}")

    creation_block = os.getenv('CREATION_BLOCK')
    try:
        creation_block = int(creation_block) if creation_block else None
    except ValueError as e:
        raise ConfigError(f"CREATION_BLOCK must be an integer, got {creation_block!r}") from e

    return Credentials(
        mnemonic=os.getenv('MNEMONIC'),
        encryption_key=derive_encryption_key(os.getenv('ENCRYPTION_KEY')),
        rpc_url=os.getenv('RPC_URL'),
        target_address=os.getenv('TARGET_0ZK_ADDRESS'),
        creation_block=creation_block,
    )
