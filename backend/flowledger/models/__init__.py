from .ledger import Batch, Dispatch, Receipt, Incident, PhotoEvidence
from .documents import DocumentSequence
from .storage import StorageEntry

__all__ = [
    'Batch', 'Dispatch', 'Receipt', 'Incident', 'PhotoEvidence',
    'DocumentSequence',
    'StorageEntry',
]
