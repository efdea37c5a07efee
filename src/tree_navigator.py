import logging
from typing import List, Optional, Sequence

from assembled_tree import AssembledGroup, AssembledGroupInstance, AssembledTree, group_matches
from edifact_models import OwnedSegment

logger = logging.getLogger(__name__)


class AssembledTreeNavigator:
    """
    Group-scoped segment queries over an assembled tree.

    Group paths are lists of group ids (``["SG4", "SG8"]``); a plain id also
    matches its qualifier variants (``SG5`` matches ``SG5_Z16``). Intermediate
    levels resolve to their first repetition.
    """

    def __init__(self, tree: AssembledTree):
        self._groups = tree.groups

    @classmethod
    def for_instance(cls, instance: AssembledGroupInstance) -> "AssembledTreeNavigator":
        """Navigator rooted at one group instance, e.g. a single transaction."""
        navigator = cls(AssembledTree())
        navigator._groups = instance.child_groups
        return navigator

    def _resolve_groups(self, path: Sequence[str]) -> List[AssembledGroup]:
        if not path:
            return []
        groups = self._groups
        for depth, group_id in enumerate(path):
            matching = [g for g in groups if group_matches(g.group_id, group_id)]
            if not matching:
                logger.debug(f"No group matching {group_id} at depth {depth} of {'/'.join(path)}")
                return []
            if depth == len(path) - 1:
                return matching
            first = next((g.repetitions[0] for g in matching if g.repetitions), None)
            if first is None:
                return []
            groups = first.child_groups
        return []

    def _resolve_instance(self, path: Sequence[str], instance_index: int) -> Optional[AssembledGroupInstance]:
        instances = [i for g in self._resolve_groups(path) for i in g.repetitions]
        if 0 <= instance_index < len(instances):
            return instances[instance_index]
        return None

    def find_segments_in_group(self, segment_id: str, group_path: Sequence[str], instance_index: int = 0) -> List[OwnedSegment]:
        instance = self._resolve_instance(group_path, instance_index)
        if instance is None:
            return []
        return [s for s in instance.segments if s.is_(segment_id)]

    def find_segments_with_qualifier_in_group(
        self,
        segment_id: str,
        element_index: int,
        qualifier: str,
        group_path: Sequence[str],
        instance_index: int = 0,
    ) -> List[OwnedSegment]:
        return [
            s for s in self.find_segments_in_group(segment_id, group_path, instance_index)
            if s.get_element(element_index).strip() == qualifier.strip()
        ]

    def group_instance_count(self, group_path: Sequence[str]) -> int:
        return sum(len(g.repetitions) for g in self._resolve_groups(group_path))

    def has_segment_in_any_instance(self, segment_id: str, group_path: Sequence[str], qualifier: Optional[str] = None) -> bool:
        for index in range(self.group_instance_count(group_path)):
            if qualifier is None:
                if self.find_segments_in_group(segment_id, group_path, index):
                    return True
            elif self.find_segments_with_qualifier_in_group(segment_id, 0, qualifier, group_path, index):
                return True
        return False
