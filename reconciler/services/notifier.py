import logging

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

INVALIDATE_PATH = "/api/admin/invalidate-cache"


class CacheInvalidationNotifier:
    def __init__(self, base_url: str = "", admin_token: str = "", timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.admin_token = admin_token
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "CacheInvalidationNotifier":
        settings = get_settings()
        return cls(
            base_url=settings.cache_invalidation_url,
            admin_token=settings.admin_token,
            timeout=settings.notify_timeout_seconds,
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.admin_token)

    def invalidate(self, patient_id: str) -> bool:
        if not patient_id:
            logger.info("Cache not invalidated: no patient_id")
            return False

        if not self.is_configured():
            logger.info(f"Cache not invalidated (no CACHE_INVALIDATION_URL / ADMIN_TOKEN): patient={patient_id}")
            return False

        try:
            resp = httpx.post(
                f"{self.base_url}{INVALIDATE_PATH}",
                headers={"Authorization": f"Bearer {self.admin_token}"},
                json={"patient_id": patient_id},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Cache invalidation failed: patient={patient_id} error={e}")
            return False

        if 200 <= resp.status_code < 300:
            logger.info(f"Cache invalidated: patient={patient_id}")
            return True

        logger.warning(f"Cache invalidation rejected: patient={patient_id} status={resp.status_code}")
        return False
