from .models import EventType, ExternalEvent, EventPayload, IngestOutcome, IngestResult, CREATION_EVENTS
from .dlq import DeadLetterQueue, DLQEntry, InMemoryDeadLetterStore, RedisDeadLetterStore
from .processor import EventProcessor

__all__ = [
    'EventType',
    'ExternalEvent',
    'EventPayload',
    'IngestOutcome',
    'IngestResult',
    'CREATION_EVENTS',
    'DeadLetterQueue',
    'DLQEntry',
    'InMemoryDeadLetterStore',
    'RedisDeadLetterStore',
    'EventProcessor',
]
