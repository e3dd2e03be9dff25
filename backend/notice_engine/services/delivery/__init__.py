"""Outbound messaging adapters."""
from .provider import DeliveryProvider, DeliveryReceipt, HttpDeliveryGateway, mask_phone

__all__ = ["DeliveryProvider", "DeliveryReceipt", "HttpDeliveryGateway", "mask_phone"]
