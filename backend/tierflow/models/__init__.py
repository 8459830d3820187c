from .hierarchy import HierarchyNode
from .catalog import Product, ProductPrice
from .orders import Order, OrderLine, OrderSequence, OrderEvent, PaymentRecord, AdminNotification

__all__ = [
    'HierarchyNode',
    'Product', 'ProductPrice',
    'Order', 'OrderLine', 'OrderSequence', 'OrderEvent', 'PaymentRecord', 'AdminNotification',
]
