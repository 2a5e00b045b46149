from .catalog import Product, ProductPrice, Customer, Warehouse
from .inventory import (
    PurchaseBatch, InventoryRecord, InventoryLog, InventoryAdjustment,
    InventoryCount, InventoryCountItem,
)
from .pricing import PriceBracket, BracketTier, CustomerPriceOverride
from .documents import (
    Sale, SaleItem, Transfer, TransferItem, SaleReturn, SaleReturnItem, DocumentSequence,
)
from .cash import PettyCashFund, PettyCashTransaction

__all__ = [
    'Product', 'ProductPrice', 'Customer', 'Warehouse',
    'PurchaseBatch', 'InventoryRecord', 'InventoryLog', 'InventoryAdjustment',
    'InventoryCount', 'InventoryCountItem',
    'PriceBracket', 'BracketTier', 'CustomerPriceOverride',
    'Sale', 'SaleItem', 'Transfer', 'TransferItem', 'SaleReturn', 'SaleReturnItem',
    'DocumentSequence',
    'PettyCashFund', 'PettyCashTransaction',
]
