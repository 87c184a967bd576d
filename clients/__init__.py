from .replicate_client import (
    ProviderError,
    ProviderNotFound,
    ProviderRateLimit,
    ProviderStatus,
    ReplicateClient,
    normalize_output,
    parse_prediction,
)
