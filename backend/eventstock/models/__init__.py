from .catalog import Client, Product, B2BStock, B2BPurchaseLog, normalize_item_name
from .events import Event, EventDispatch, EventDispatchLine, DispatchAllocation, EventReturn, EventReturnLine
from .invoices import Invoice, InvoiceLine, DocumentSequence
from .ledger import StockLedgerEntry, AuditEvent

__all__ = [
    'Client', 'Product', 'B2BStock', 'B2BPurchaseLog', 'normalize_item_name',
    'Event', 'EventDispatch', 'EventDispatchLine', 'DispatchAllocation',
    'EventReturn', 'EventReturnLine',
    'Invoice', 'InvoiceLine', 'DocumentSequence',
    'StockLedgerEntry', 'AuditEvent',
]
