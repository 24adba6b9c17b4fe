from .discount_service import DiscountCatalogService
from .membership_service import GroupMembershipService
from .cart_service import CartService
from .payment_gateway import PaymentIntentResult, StripePaymentGateway
from .notification_service import NotificationService
from .checkout_service import CheckoutService
from .settlement_service import SettlementService

__all__ = [
    "DiscountCatalogService",
    "GroupMembershipService",
    "CartService",
    "PaymentIntentResult",
    "StripePaymentGateway",
    "NotificationService",
    "CheckoutService",
    "SettlementService",
]
