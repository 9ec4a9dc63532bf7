"""
VEIL - Litter classification oracle

The pipeline treats classification as an external collaborator: anything
with a classify(image_hash, image_bytes=None) method returning a
Classification. HashDerivedClassifier is the reference oracle; it derives
label and confidence from the first 32 bits of the image hash so results are
reproducible without a model.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger("veil.classifier")


class LitterLabel(str, Enum):
    PLASTIC_BOTTLE = "plastic_bottle"
    PLASTIC_BAG    = "plastic_bag"
    CIGARETTE_BUTT = "cigarette_butt"
    FOOD_WRAPPER   = "food_wrapper"
    GLASS_BOTTLE   = "glass_bottle"
    CAN            = "can"
    PAPER          = "paper"
    CARDBOARD      = "cardboard"
    ORGANIC_WASTE  = "organic_waste"


# Order matters: HashDerivedClassifier indexes into it.
LABELS = [label.value for label in LitterLabel]

POINTS = {
    "plastic_bottle": 15,
    "plastic_bag":    10,
    "cigarette_butt":  5,
    "food_wrapper":    8,
    "glass_bottle":   12,
    "can":            10,
    "paper":           5,
    "cardboard":       8,
    "organic_waste":   3,
}
DEFAULT_POINTS = 10


def points_for(label: str) -> int:
    return POINTS.get(label, DEFAULT_POINTS)


@dataclass(frozen=True)
class Classification:
    label:      str
    confidence: float   # 0.0–1.0


class HashDerivedClassifier:

    def classify(self, image_hash: str, image_bytes: Optional[bytes] = None) -> Classification:
        v = int(image_hash[:8], 16)
        result = Classification(
            label      = LABELS[v % len(LABELS)],
            confidence = (v % 60 + 40) / 100,
        )
        logger.info(f"[CLASSIFY] {image_hash[:12]}… → {result.label} ({result.confidence:.0%})")
        return result
