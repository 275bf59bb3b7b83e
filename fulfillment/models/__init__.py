"""
Database models
"""
from fulfillment.models.order import ShippableOrder, FulfillmentState, ServiceLevel
from fulfillment.models.shipment import Shipment, ShipmentOrder, ShipmentStatus, TrackingEvent
from fulfillment.models.shelf import Shelf, ShelfAssignment
from fulfillment.models.job_lease import JobLease, WebhookInboxEntry, InboxStatus

__all__ = [
    "ShippableOrder",
    "FulfillmentState",
    "ServiceLevel",
    "Shipment",
    "ShipmentOrder",
    "ShipmentStatus",
    "TrackingEvent",
    "Shelf",
    "ShelfAssignment",
    "JobLease",
    "WebhookInboxEntry",
    "InboxStatus",
]
