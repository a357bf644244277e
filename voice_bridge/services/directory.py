"""Known caller numbers mapped to Update247 properties.

The directory is a JSON object ``{"phone_mappings": [{"phone_number",
"property_id", "property_name"}, ...]}`` kept in the bucket, or in a local
file of the same name.
"""

import json
from pathlib import Path

from pydantic import ValidationError

from voice_bridge.conversation.models import DirectoryEntry, PhoneLookup
from voice_bridge.services.storage import StorageService
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def digits_only(value: object) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


def find_matches(number: str | None, mappings: list[dict]) -> list[DirectoryEntry]:
    """Entries whose number equals ``number`` by digits, or as the raw string."""
    if not number or not isinstance(mappings, list):
        return []

    wanted = digits_only(number)
    matches = []
    for raw in mappings:
        if not isinstance(raw, dict):
            continue
        listed = str(raw.get("phone_number") or "")
        same_digits = bool(wanted) and digits_only(listed) == wanted
        if not (same_digits or listed == number):
            continue
        try:
            matches.append(DirectoryEntry.model_validate(raw))
        except ValidationError as e:
            logger.warning("phone_mapping_invalid", phone_number=listed, error=str(e))
    return matches


class PhoneDirectory:
    def __init__(
        self,
        storage: StorageService,
        object_name: str = "phone-mappings.json",
        local_path: Path | None = None,
    ):
        self._storage = storage
        self._object_name = object_name
        self._local_path = local_path or Path.cwd() / object_name

    async def lookup(self, number: str | None) -> PhoneLookup:
        """Find the accounts for a caller number. Failures yield an empty result."""
        if not number:
            return PhoneLookup(performed=False)

        try:
            loaded = await self._storage.load_text(self._object_name, self._local_path)
        except OSError as e:
            logger.error("phone_mappings_unreadable", error=str(e))
            return PhoneLookup(performed=True)
        if loaded is None:
            logger.info("phone_mappings_missing", object=self._object_name)
            return PhoneLookup(performed=True)

        content, source = loaded
        try:
            mappings = json.loads(content).get("phone_mappings") or []
        except (ValueError, AttributeError) as e:
            logger.error("phone_mappings_invalid", source=source, error=str(e))
            return PhoneLookup(performed=True, source=source)

        matches = find_matches(number, mappings)
        logger.info(
            "phone_lookup",
            source=source,
            entries=len(mappings) if isinstance(mappings, list) else 0,
            matches=len(matches),
        )
        return PhoneLookup(performed=True, found=bool(matches), source=source, matches=matches)
