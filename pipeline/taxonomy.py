"""
Shared taxonomy registry for analyzer labels.

Repeated label strings across images (tags, colors, category, style,
mood) resolve to one taxonomy entry, so records reference labels by id
alongside the raw strings.
"""

import logging
from dataclasses import dataclass, field

from db.records import TaxonomyEntry, TaxonomyType
from db.stores import TaxonomyStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedLabels:
    """Taxonomy ids for one analysis result."""
    tag_ids: list[str] = field(default_factory=list)
    color_ids: list[str] = field(default_factory=list)
    category_id: str | None = None
    style_id: str | None = None
    mood_id: str | None = None


class TaxonomyRegistry:
    """
    Get-or-create access to the taxonomy store.

    Lookup is by exact, case-sensitive name within a type. Store failures
    are logged and the label is left without an id.
    """

    def __init__(self, store: TaxonomyStore):
        self.store = store

    def get_or_create(self, taxonomy_type: TaxonomyType, name: str | None) -> TaxonomyEntry | None:
        if not name:
            return None
        try:
            return self.store.get_or_create(taxonomy_type, name)
        except Exception as e:
            logger.error(f"Failed to resolve {taxonomy_type.value} '{name}': {e}")
            return None

    def _ids(self, taxonomy_type: TaxonomyType, names: list[str]) -> list[str]:
        ids = []
        for name in names:
            entry = self.get_or_create(taxonomy_type, name)
            if entry is not None:
                ids.append(entry.id)
        return ids

    def _id(self, taxonomy_type: TaxonomyType, name: str | None) -> str | None:
        entry = self.get_or_create(taxonomy_type, name)
        return entry.id if entry else None

    def resolve(
        self,
        tags: list[str],
        colors: list[str],
        category: str | None,
        style: str | None,
        mood: str | None
    ) -> ResolvedLabels:
        """
        Resolve every label of an analysis result to taxonomy ids.

        Args:
            tags: Tag labels.
            colors: Color labels.
            category: Category label.
            style: Style label.
            mood: Mood label.

        Returns:
            ResolvedLabels; labels that could not be resolved are skipped.
        """
        return ResolvedLabels(
            tag_ids=self._ids(TaxonomyType.TAG, tags),
            color_ids=self._ids(TaxonomyType.COLOR, colors),
            category_id=self._id(TaxonomyType.CATEGORY, category),
            style_id=self._id(TaxonomyType.STYLE, style),
            mood_id=self._id(TaxonomyType.MOOD, mood),
        )

    def list(self, taxonomy_type: TaxonomyType | None = None) -> list[TaxonomyEntry]:
        return self.store.list(taxonomy_type)
