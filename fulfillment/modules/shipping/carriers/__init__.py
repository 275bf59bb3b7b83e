"""
Carrier Registry and Factory

- CarrierFactory resolves a carrier code to a gateway instance
- Codes listed in SANDBOX_CARRIERS resolve to the deterministic sandbox
- Real API clients register with @register_carrier or register_instance()
"""
from typing import Dict, Optional, Type
import logging

from fulfillment.core.config import settings
from fulfillment.modules.shipping.carriers.base import CarrierGateway

logger = logging.getLogger(__name__)

# Registry of carrier implementations
_CARRIER_REGISTRY: Dict[str, Type[CarrierGateway]] = {}


def register_carrier(carrier_code: str):
    """
    Decorator to register a carrier implementation.

    Usage:
        @register_carrier("UPS")
        class UPSGateway(CarrierGateway):
            ...
    """
    def decorator(cls: Type[CarrierGateway]):
        _CARRIER_REGISTRY[carrier_code.upper()] = cls
        logger.info(f"Registered carrier: {carrier_code} -> {cls.__name__}")
        return cls
    return decorator


class CarrierFactory:
    """
    Factory for carrier gateway instances.

    Instances are cached per code so per-carrier state (rate-limit locks,
    client sessions) is shared by every caller.
    """

    _instances: Dict[str, CarrierGateway] = {}

    @classmethod
    def get_carrier(cls, carrier_code: str) -> Optional[CarrierGateway]:
        """
        Get a carrier gateway.

        Returns:
            CarrierGateway instance or None if no implementation is known
        """
        code = (carrier_code or "").upper()
        if code in cls._instances:
            return cls._instances[code]

        if code in settings.SANDBOX_CARRIERS:
            from fulfillment.modules.shipping.carriers.sandbox import SandboxCarrier
            gateway = SandboxCarrier(code)
        else:
            carrier_cls = _CARRIER_REGISTRY.get(code)
            if not carrier_cls:
                logger.warning(f"No implementation registered for carrier: {code}")
                return None
            gateway = carrier_cls()

        cls._instances[code] = gateway
        return gateway

    @classmethod
    def register_instance(cls, gateway: CarrierGateway) -> None:
        """Use an already-built gateway for its carrier code."""
        cls._instances[gateway.carrier_code.upper()] = gateway

    @classmethod
    def reset(cls) -> None:
        cls._instances.clear()


def get_carrier(carrier_code: str) -> Optional[CarrierGateway]:
    """
    Convenience function to get a carrier.

    Equivalent to CarrierFactory.get_carrier().
    """
    return CarrierFactory.get_carrier(carrier_code)


# Import carriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from fulfillment.modules.shipping.carriers import sandbox  # noqa: E402, F401
