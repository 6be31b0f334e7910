"""Grouping engine: new face → existing group of its best match, or a fresh group.

Greedy, single-pass and non-transitive. A face copies the group of its first
qualifying match at the moment it is indexed; groups are never merged or split
afterwards, so A~B and B~C does not imply A and C share a group unless B's
group was copied along the way.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from facegroup.faces.errors import PersistenceFailed
from facegroup.faces.matcher import FaceMatch, FaceMatcher
from facegroup.faces.records import FaceRecord, FaceStore

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 85.0


@dataclass(frozen=True)
class GroupDecision:
    group_id: str
    matched_face_id: str | None = None
    similarity: float | None = None
    reason: str = "new_group"  # new_group | matched | orphan_match


def choose_group(
    face_id: str,
    matches: list[FaceMatch],
    threshold: float,
    lookup: Callable[[str], FaceRecord | None],
) -> GroupDecision:
    """Pick a group for face_id from the provider-ranked match list.

    The first match at or above threshold wins; list order is the tie-break.
    A matched face with no stored record (lookup returns None or fails) falls
    back to a fresh group keyed by the new face id.
    """
    best = next((m for m in matches if m.face_id != face_id and m.similarity >= threshold), None)
    if best is None:
        return GroupDecision(group_id=face_id)

    try:
        existing = lookup(best.face_id)
    except PersistenceFailed:
        logger.warning("Group lookup for matched face %s failed, starting new group", best.face_id, exc_info=True)
        existing = None

    if existing is None:
        logger.warning(
            "Matched face %s (%.1f%%) has no stored record, starting new group %s",
            best.face_id,
            best.similarity,
            face_id,
        )
        return GroupDecision(
            group_id=face_id,
            matched_face_id=best.face_id,
            similarity=best.similarity,
            reason="orphan_match",
        )

    return GroupDecision(
        group_id=existing.group_id,
        matched_face_id=best.face_id,
        similarity=best.similarity,
        reason="matched",
    )


class GroupingEngine:
    """Assign a group to a freshly indexed face using the matcher and the store."""

    def __init__(self, matcher: FaceMatcher, store: FaceStore, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        if not 0.0 <= threshold <= 100.0:
            raise ValueError(f"similarity threshold must be within [0, 100], got {threshold}")
        self.matcher = matcher
        self.store = store
        self.threshold = threshold

    def assign(self, face_id: str) -> GroupDecision:
        """Return the group decision for face_id. Matcher errors propagate as DetectionFailed."""
        matches = self.matcher.find_similar(face_id, self.threshold)
        decision = choose_group(face_id, matches, self.threshold, self.store.get)
        if decision.reason == "matched":
            logger.info(
                "Face %s joins group %s via %s (%.1f%%)",
                face_id,
                decision.group_id,
                decision.matched_face_id,
                decision.similarity,
            )
        elif decision.reason == "new_group":
            logger.info("No similar faces for %s, new group %s", face_id, decision.group_id)
        return decision
