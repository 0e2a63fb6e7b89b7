"""
Gas details

Fee data is fetched from the chain provider and shaped for the network's
fee model. Fields the provider leaves empty fall back to configured
defaults, the same way withdrawal fees fall back when an exchange API is
silent.
"""

from typing import Mapping, Optional

from loguru import logger

from .config import TransferSettings
from .errors import EstimationError
from .models import EVMGasType, GasDetails


def resolve_gas_type(engine, network_name: str, send_with_public_wallet: bool) -> EVMGasType:
    """
    Ask the engine which fee model the network uses

    Called once per workflow so every stage prices with the same model.
    """
    raw = engine.get_evm_gas_type(network_name, send_with_public_wallet)
    try:
        gas_type = EVMGasType(int(raw))
    except (TypeError, ValueError) as e:
        raise EstimationError(f"Unsupported EVM gas type {raw!r} for {network_name}") from e
    logger.info(f"Fee model for {network_name}: {'EIP-1559' if gas_type.is_eip1559 else 'legacy'} (type {int(gas_type)})")
    return gas_type


def _fee_field(fee_data: Mapping[str, Optional[int]], *names: str) -> Optional[int]:
    for name in names:
        value = fee_data.get(name)
        if value:
            return int(value)
    return None


def build_gas_details(
    gas_type: EVMGasType,
    fee_data: Mapping[str, Optional[int]],
    gas_estimate: int,
    settings: Optional[TransferSettings] = None,
) -> GasDetails:
    """
    Build GasDetails for `gas_type` from provider fee data

    Args:
        gas_type: Fee model resolved at workflow start
        fee_data: Provider fee data (snake_case or camelCase keys)
        gas_estimate: Gas units (0 while estimating)
        settings: Transfer settings holding fallback fees

    Returns:
        GasDetails
    """
    settings = settings or TransferSettings()

    if gas_type.is_eip1559:
        max_fee = _fee_field(fee_data, 'max_fee_per_gas', 'maxFeePerGas')
        priority_fee = _fee_field(fee_data, 'max_priority_fee_per_gas', 'maxPriorityFeePerGas')
        if max_fee is None or priority_fee is None:
            logger.warning("⚠ Provider fee data incomplete, using default EIP-1559 fees")
        return GasDetails(
            evm_gas_type=gas_type,
            gas_estimate=gas_estimate,
            max_fee_per_gas=max_fee or settings.default_max_fee,
            max_priority_fee_per_gas=priority_fee or settings.default_priority_fee,
        )

    gas_price = _fee_field(fee_data, 'gas_price', 'gasPrice')
    if gas_price is None:
        logger.warning("⚠ Provider returned no gas price, using default")
    return GasDetails(
        evm_gas_type=gas_type,
        gas_estimate=gas_estimate,
        gas_price=gas_price or settings.default_gas_price,
    )


def buffered_gas_limit(gas_estimate: int, buffer_percent: int) -> int:
    return gas_estimate * buffer_percent // 100
