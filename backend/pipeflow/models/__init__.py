from .tables import metadata, store_meta, inventory_items, customers, sales, sale_lines, settings, sequences, DATA_TABLES
from .inventory import InventoryItem
from .sale import SaleRecord, SaleLineItem, SALE_STATUSES
from .customer import Customer, AGGREGATE_FIELDS

__all__ = [
    'metadata', 'store_meta', 'inventory_items', 'customers', 'sales', 'sale_lines',
    'settings', 'sequences', 'DATA_TABLES',
    'InventoryItem',
    'SaleRecord', 'SaleLineItem', 'SALE_STATUSES',
    'Customer', 'AGGREGATE_FIELDS',
]
