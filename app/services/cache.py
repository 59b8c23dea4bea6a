"""
Invalidation of derived-results cache entries. The reporting layer writes them; we only delete.
"""
import logging

from sqlalchemy.orm import Session

from app.models import CacheEntry

logger = logging.getLogger(__name__)

# Datasets derived from each service's entity records
CACHE_KEYS_BY_SERVICE = {
    "gohighlevel": ("ghl_metrics", "ghl_enhanced_metrics", "firm_metrics"),
    "clio": ("clio_metrics", "firm_metrics"),
    "quickbooks": ("quickbooks_metrics", "firm_metrics"),
}


def invalidate_cache(db: Session, owner: str, service: str) -> int:
    """Delete the owner's cache entries derived from `service`. Returns rows deleted."""
    keys = CACHE_KEYS_BY_SERVICE.get(service, ("firm_metrics",))
    deleted = (
        db.query(CacheEntry)
        .filter(CacheEntry.user_id == owner, CacheEntry.cache_key.in_(keys))
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Invalidated %s cache entries for owner %s (%s)", deleted, owner, service)
    return deleted
