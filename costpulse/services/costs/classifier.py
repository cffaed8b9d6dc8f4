"""
Resource Classifier

Decides whether a billed resource belongs to the excluded (AVD / virtual
desktop) category. Excluded records are still collected and stored, tagged with
is_excluded_resource=True, and left out of reported totals.

The default strategy is a coarse, case-insensitive substring match: any name
containing the token is excluded, including names where the token is part of an
unrelated word ("prod-vdb-01", "dvd-cache"). The `segment` strategy requires
the token to be a whole name segment instead.
"""

import re
from dataclasses import dataclass
from typing import Optional

SUBSTRING = "substring"
SEGMENT = "segment"

_SEGMENT_SEPARATORS = re.compile(r"[-_./\s]+")


@dataclass(frozen=True)
class ResourceClassifier:
    token: str = "VD"
    strategy: str = SUBSTRING

    def __post_init__(self):
        if self.strategy not in (SUBSTRING, SEGMENT):
            raise ValueError(f"Unknown match strategy '{self.strategy}'")
        if not self.token:
            raise ValueError("Exclusion token must not be empty")

    @classmethod
    def from_config(cls, config) -> "ResourceClassifier":
        return cls(token=config.exclusion_token, strategy=config.exclusion_match_strategy)

    def is_excluded(self, resource_name: Optional[str]) -> bool:
        if not resource_name:
            return False
        needle = self.token.lower()
        if self.strategy == SUBSTRING:
            return needle in resource_name.lower()
        return needle in (s for s in _SEGMENT_SEPARATORS.split(resource_name.lower()) if s)
