from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping

logger = logging.getLogger(__name__)

ACCOUNT_METADATA_KEY = "account_id"


def account_id_from_metadata(metadata: Mapping[str, str] | None) -> str | None:
    if not metadata:
        return None
    raw = metadata.get(ACCOUNT_METADATA_KEY)
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return str(uuid.UUID(raw.strip()))
    except ValueError:
        logger.warning("ignoring malformed account reference in billing metadata value=%r", raw)
        return None


class IdentityResolver:
    """Maps a billing resource to the internal account that owns it.

    Explicit ``account_id`` metadata wins; otherwise the stored
    customer-to-account mapping is consulted. A miss returns ``None``;
    store errors propagate.
    """

    def __init__(self, repository) -> None:
        self._repository = repository

    async def resolve(
        self,
        *,
        metadata: Mapping[str, str] | None,
        provider_customer_id: str | None,
    ) -> str | None:
        account_id = account_id_from_metadata(metadata)
        if account_id:
            return account_id

        if not provider_customer_id:
            return None

        account_id = await self._repository.get_account_id_for_customer(provider_customer_id=provider_customer_id)
        if account_id:
            logger.info(
                "resolved billing customer via mapping customer_id=%s account_id=%s",
                provider_customer_id,
                account_id,
            )
        return account_id
