from .inventory import StockUnit, Reservation, ListingStatus, ReservationStatus
from .orders import Order, OrderLine, OrderStatus
from .payments import PaymentIntent, ProviderEvent, PaymentMethod, PaymentIntentStatus, NON_TERMINAL_INTENT_STATUSES
from .payouts import PayoutMethod, PayoutEntry, PayoutMethodType, VerificationState
from .events import DomainEvent

__all__ = [
    'StockUnit', 'Reservation', 'ListingStatus', 'ReservationStatus',
    'Order', 'OrderLine', 'OrderStatus',
    'PaymentIntent', 'ProviderEvent', 'PaymentMethod', 'PaymentIntentStatus', 'NON_TERMINAL_INTENT_STATUSES',
    'PayoutMethod', 'PayoutEntry', 'PayoutMethodType', 'VerificationState',
    'DomainEvent',
]
