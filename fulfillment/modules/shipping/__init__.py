"""
Shipping Module

- CarrierGateway interface for all carrier integrations
- CarrierFactory resolves carrier codes to gateways
"""
from fulfillment.modules.shipping.carriers import CarrierFactory, get_carrier
from fulfillment.modules.shipping.carriers.base import CarrierGateway

__all__ = [
    "CarrierFactory",
    "get_carrier",
    "CarrierGateway",
]
