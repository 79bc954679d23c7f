"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Lead Backoffice - Models Package                                            ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import LeadSubmission, LeadCandidate, ShopifyOrder, etc.        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from .lead import (
    LeadStatus,
    VALID_LEAD_STATUSES,
    IngestChannel,
    MAX_QUANTITY,
    LeadSubmission,
    LineItem,
    LeadCandidate,
    LeadStatusUpdate,
)

from .product import (
    ProductStatus,
    ProductSummary,
)

from .postback import (
    NotificationStatus,
    PostbackConfigUpdate,
    PostbackTestRequest,
)

from .payout import (
    PayoutOverrideKey,
    PayoutOverrideUpsert,
)

from .wallet import (
    WithdrawRequest,
)

from .shopify import (
    ShopifyAddress,
    ShopifyCustomer,
    ShopifyLineItem,
    ShopifyOrder,
    ShopifyFulfillmentOrder,
    ShopifyFulfillmentOrderLineItem,
    FulfillmentOrderNotification,
)

__all__ = [
    # Lead
    'LeadStatus', 'VALID_LEAD_STATUSES', 'IngestChannel', 'MAX_QUANTITY',
    'LeadSubmission', 'LineItem', 'LeadCandidate', 'LeadStatusUpdate',
    # Product
    'ProductStatus', 'ProductSummary',
    # Postback
    'NotificationStatus', 'PostbackConfigUpdate', 'PostbackTestRequest',
    # Payout
    'PayoutOverrideKey', 'PayoutOverrideUpsert',
    # Wallet
    'WithdrawRequest',
    # Shopify
    'ShopifyAddress', 'ShopifyCustomer', 'ShopifyLineItem', 'ShopifyOrder',
    'ShopifyFulfillmentOrder', 'ShopifyFulfillmentOrderLineItem',
    'FulfillmentOrderNotification',
]
