from __future__ import annotations

import logging
from typing import Optional

from backend.app.models import OwnerRecord
from backend.app.services.phones import DEFAULT_COUNTRY_CODE, phone_variations
from backend.app.store import InMemoryStore

logger = logging.getLogger("sms_inbox.resolver")

EXACT_MIN_LENGTH = 7
FUZZY_MIN_LENGTH = 10


class OwnerResolver:
    """Attributes an inbound sender number to at most one owner record.

    Phase 1 runs exact-equality lookups over the variation set. Phase 2 only
    runs when Phase 1 found nothing: a bounded ``contains`` lookup whose
    candidates must share at least one variation with the sender before they
    are accepted.
    """

    def __init__(
        self,
        store: InMemoryStore,
        *,
        country_code: str = DEFAULT_COUNTRY_CODE,
        candidate_limit: int = 5,
    ) -> None:
        self.store = store
        self.country_code = country_code
        self.candidate_limit = candidate_limit

    def resolve(self, phone: str) -> Optional[OwnerRecord]:
        variations = phone_variations(phone, self.country_code)
        if not variations:
            logger.info("owner_unresolved reason=empty_phone raw=%r", phone)
            return None

        owner = self._exact_match(variations)
        if owner:
            return owner
        owner = self._fuzzy_match(variations)
        if owner:
            return owner
        logger.info("owner_unresolved phone=%s variations=%d", phone, len(variations))
        return None

    def _exact_match(self, variations: tuple[str, ...]) -> Optional[OwnerRecord]:
        for variation in variations:
            if len(variation) < EXACT_MIN_LENGTH:
                continue
            matches = self.store.find_owners_by_phone(variation, limit=1)
            if matches:
                owner = matches[0]
                logger.info(
                    "owner_resolved phase=exact variation=%s owner_id=%s", variation, owner.id
                )
                return owner
        return None

    def _fuzzy_match(self, variations: tuple[str, ...]) -> Optional[OwnerRecord]:
        incoming = set(variations)
        for variation in variations:
            if len(variation) < FUZZY_MIN_LENGTH:
                continue
            candidates = self.store.search_owners_by_phone_fragment(
                variation, limit=self.candidate_limit
            )
            if not candidates:
                continue
            validated = [
                candidate
                for candidate in candidates
                if not incoming.isdisjoint(phone_variations(candidate.phone, self.country_code))
            ]
            if validated:
                owner = validated[0]
                logger.info(
                    "owner_resolved phase=fuzzy variation=%s owner_id=%s validated=%d",
                    variation,
                    owner.id,
                    len(validated),
                )
                return owner
            logger.warning(
                "fuzzy_candidates_rejected variation=%s candidates=%d",
                variation,
                len(candidates),
            )
        return None
