"""
Validation of batch categorization results.

Every item in a batch must receive exactly one category assignment. Results
with missing, duplicate or unknown item ids are rejected, unknown categories
are dropped, and assignments below the confidence threshold are treated as
"no category".
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ai_gateway.core.errors import InvalidModelOutput
from ai_gateway.logging_config import get_logger

logger = get_logger(__name__)

CONFIDENCE_THRESHOLD = 0.6

# JSON schema hint sent as response_format
CATEGORIZE_RESPONSE_FORMAT: Dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "item_category_mapping",
        "strict": True,
        "schema": {
            "type": "object",
            "properties": {
                "mappings": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "itemId": {"type": "string"},
                            "categoryId": {"type": ["string", "null"]},
                            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        },
                        "required": ["itemId", "categoryId", "confidence"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["mappings"],
            "additionalProperties": False,
        },
    },
}


@dataclass(frozen=True)
class CategoryMapping:
    """Category assigned to one item. category_id None means uncategorized."""
    item_id: str
    category_id: Optional[str]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "categoryId": self.category_id,
            "confidence": self.confidence,
        }


def validate_category_mappings(
    item_ids: Sequence[str],
    category_ids: Sequence[str],
    payload: Any
) -> List[CategoryMapping]:
    """Check a categorization payload against the batch it answers.

    Args:
        item_ids: Ids of the items sent for categorization
        category_ids: Ids of the allowed categories
        payload: Parsed model output, {"mappings": [{itemId, categoryId, confidence}]}

    Returns:
        One CategoryMapping per item, in the order the model returned them

    Raises:
        InvalidModelOutput: If the payload is malformed, misses or repeats an
            item, or names an item that was not in the batch
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("mappings"), list):
        raise InvalidModelOutput("Categorization payload must contain a 'mappings' list")

    raw_mappings = payload["mappings"]
    if len(raw_mappings) != len(item_ids):
        logger.error(
            "AI returned wrong number of mappings",
            expected=len(item_ids),
            received=len(raw_mappings)
        )
        raise InvalidModelOutput(
            f"Expected {len(item_ids)} mappings, got {len(raw_mappings)}"
        )

    known_items = set(item_ids)
    known_categories = set(category_ids)
    seen = set()
    mappings = []

    for raw in raw_mappings:
        mapping = _parse_mapping(raw)
        if mapping.item_id not in known_items:
            raise InvalidModelOutput(f"AI returned unknown itemId: {mapping.item_id}")
        if mapping.item_id in seen:
            raise InvalidModelOutput(f"AI returned duplicate itemId: {mapping.item_id}")
        seen.add(mapping.item_id)

        if mapping.category_id is not None and mapping.category_id not in known_categories:
            logger.warning(
                "AI returned unknown categoryId, resetting to null",
                category_id=mapping.category_id,
                item_id=mapping.item_id
            )
            mapping = CategoryMapping(item_id=mapping.item_id, category_id=None, confidence=0.0)
        elif mapping.category_id is not None and mapping.confidence < CONFIDENCE_THRESHOLD:
            mapping = CategoryMapping(
                item_id=mapping.item_id,
                category_id=None,
                confidence=mapping.confidence
            )
        mappings.append(mapping)

    if mappings:
        low_confidence = [m for m in mappings if m.confidence < CONFIDENCE_THRESHOLD]
        avg_confidence = sum(m.confidence for m in mappings) / len(mappings)
        logger.info(
            "Items categorized",
            mappings_count=len(mappings),
            avg_confidence=round(avg_confidence, 2),
            low_confidence_count=len(low_confidence)
        )
    return mappings


def _parse_mapping(raw: Any) -> CategoryMapping:
    """Build a CategoryMapping from one raw payload entry."""
    if not isinstance(raw, dict):
        raise InvalidModelOutput("Each mapping must be an object")

    item_id = raw.get("itemId")
    category_id = raw.get("categoryId")
    confidence = raw.get("confidence")

    if not isinstance(item_id, str):
        raise InvalidModelOutput("Mapping itemId must be a string")
    if category_id is not None and not isinstance(category_id, str):
        raise InvalidModelOutput(f"Mapping categoryId for {item_id} must be a string or null")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise InvalidModelOutput(f"Mapping confidence for {item_id} must be a number")
    if not 0 <= confidence <= 1:
        raise InvalidModelOutput(f"Mapping confidence for {item_id} must be between 0 and 1")

    return CategoryMapping(item_id=item_id, category_id=category_id, confidence=float(confidence))
