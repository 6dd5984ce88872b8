"""
Sync Schemas Package
Request/response models for the catalog sync pipeline.
"""

from .sync_schemas import (
    # Request schemas
    ProductPayload,
    SyncRequest,

    # Response schemas
    SyncResponse,
    RefreshLimitInfo,
    TokenQuotaInfo,

    # Helper functions
    normalize_product_id,
    parse_price,
    parse_tags,
    parse_image,
)
