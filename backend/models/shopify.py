"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Payloads Shopify (webhooks)                               ║
║                                                                              ║
║  Seuls les champs utilisés par l'import sont déclarés.                       ║
║  Tout le reste du payload est ignoré (extra="ignore").                       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List

from pydantic import BaseModel, ConfigDict


class ShopifyAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ShopifyCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class ShopifyLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    title: str = ""
    quantity: int = 1
    price: str = "0"
    sku: Optional[str] = None


class ShopifyOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    order_number: int
    email: Optional[str] = None
    total_price: str = "0"
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    customer: Optional[ShopifyCustomer] = None
    billing_address: Optional[ShopifyAddress] = None
    shipping_address: Optional[ShopifyAddress] = None
    line_items: List[ShopifyLineItem] = []
    note: Optional[str] = None
    tags: Optional[str] = None


class ShopifyFulfillmentOrderLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    line_item_id: Optional[int] = None
    quantity: int = 1


class ShopifyFulfillmentOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    order_id: Optional[int] = None
    status: str = "open"
    request_status: Optional[str] = None
    assigned_location_id: Optional[int] = None
    destination: Optional[ShopifyAddress] = None
    line_items: List[ShopifyFulfillmentOrderLineItem] = []


class FulfillmentOrderNotification(BaseModel):
    """Fulfillment order assigné + commande parente (les deux sont nécessaires à l'import)"""
    model_config = ConfigDict(extra="ignore")

    fulfillment_order: ShopifyFulfillmentOrder
    order: ShopifyOrder
