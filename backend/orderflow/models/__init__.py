from .catalog import Category, Product
from .orders import Order, OrderItem
from .payments import Payment
from .inventory import InventoryLog

__all__ = [
    'Category', 'Product',
    'Order', 'OrderItem',
    'Payment',
    'InventoryLog',
]
