from chatbridge.services.dedup_service import DedupCache, RedisDedupCache, build_dedup_cache
from chatbridge.services.ingestion_service import IngestionOutcome, IngestionService
from chatbridge.services.responder_service import FALLBACK_REPLY, Responder
from chatbridge.services.result import Result
from chatbridge.services.storage_service import (
    SessionExpiredError,
    StoreAuthExhaustedError,
    StoreError,
    StoreGateway,
    StoreNotFoundError,
    StoreValidationError,
)
