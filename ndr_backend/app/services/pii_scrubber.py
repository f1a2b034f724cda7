"""
PII Scrubber Service.

Strips customer contact data from carrier remarks before a classification
prompt leaves the platform. Regex-only detection for low latency and
predictable behaviour.

The scrub manifest records what was removed as a SHA-256 hash; originals
are never stored.
"""
import re
import hashlib
import logging
from typing import Dict, List, Tuple, Any, Optional

logger = logging.getLogger(__name__)

# Order matters: emails before phones so digits inside addresses are not split
_PATTERNS = {
    "email": re.compile(
        r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b",
    ),
    "phone_in": re.compile(
        r"(?:\+91[\s\-]?|\b0)?\b[6-9]\d{4}[\s\-]?\d{5}\b",
    ),
    "phone_generic": re.compile(
        r"\+\d{1,3}[\s\-]?\d[\d\s\-]{7,12}\d",
    ),
    "consignee_name": re.compile(
        r"((?:Customer|Consignee|Receiver|Name):\s*)([A-Z][a-z]+(?: [A-Z][a-z]+)?)",
        re.IGNORECASE,
    ),
    "pincode": re.compile(
        r"\b[1-9]\d{5}\b",
    ),
}

_REPLACEMENTS = {
    "email": "[EMAIL_REDACTED]",
    "phone_in": "[PHONE_REDACTED]",
    "phone_generic": "[PHONE_REDACTED]",
    "consignee_name": "[NAME_REDACTED]",
    "pincode": "[PINCODE_REDACTED]",
}


class PIIScrubber:
    """
    Regex-based PII scrubber for classification prompt sanitisation.
    """

    def __init__(
        self,
        fields_to_scrub: Optional[List[str]] = None,
        fields_to_pass_through: Optional[List[str]] = None,
    ):
        all_fields = list(_PATTERNS.keys())
        self.fields_to_scrub = fields_to_scrub or all_fields
        self.fields_to_pass_through = set(fields_to_pass_through or [])
        self.active_fields = [
            f for f in self.fields_to_scrub if f not in self.fields_to_pass_through
        ]

    def scrub(self, text: str) -> Tuple[str, List[Dict[str, Any]]]:
        """
        Scrub PII from text.

        Returns:
            (scrubbed_text, scrub_manifest)
        """
        scrubbed = text
        manifest: List[Dict[str, Any]] = []

        for field_type in self.active_fields:
            pattern = _PATTERNS.get(field_type)
            replacement = _REPLACEMENTS.get(field_type, "[REDACTED]")
            if not pattern:
                continue

            if field_type == "consignee_name":
                # Keep the label, only redact the name
                def replace_name(m: re.Match) -> str:
                    manifest.append({
                        "field_type": field_type,
                        "original_value_hash": self._hash(m.group(2)),
                        "replacement": replacement,
                    })
                    return f"{m.group(1)}{replacement}"
                scrubbed = pattern.sub(replace_name, scrubbed)
            else:
                def make_replacer(ft: str, rep: str):
                    def replacer(m: re.Match) -> str:
                        manifest.append({
                            "field_type": ft,
                            "original_value_hash": self._hash(m.group(0)),
                            "replacement": rep,
                        })
                        return rep
                    return replacer
                scrubbed = pattern.sub(make_replacer(field_type, replacement), scrubbed)

        if manifest:
            logger.debug(f"Scrubbed {len(manifest)} PII fields from prompt input")
        return scrubbed, manifest

    def _hash(self, value: str) -> str:
        return hashlib.sha256(value.encode()).hexdigest()[:16]
