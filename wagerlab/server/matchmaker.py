"""Cohort split policies.

The SessionManager owns the waiting cohort, its timer and persistence. The
matchmaker only answers two questions about an ordered cohort:

- is it full, so it should be promoted to a group session right away?
- once its wait has expired, which participants form the group and which
  are sent to solo sessions?

Custom policies subclass Matchmaker. They are called while the
SessionManager holds its cohort semaphore and must not touch the store or
spawn green threads.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from wagerlab.utils.typing import SubjectID

logger = logging.getLogger(__name__)


@dataclass
class CohortSplit:
    """Outcome of splitting an expired cohort.

    Attributes:
        group: Participants forming the group session, in join order. Empty
            if the cohort is too small for a group.
        solos: Participants that each get their own solo session, in join order.
    """

    group: list[SubjectID] = field(default_factory=list)
    solos: list[SubjectID] = field(default_factory=list)


class Matchmaker(ABC):
    """Abstract base class for cohort policies."""

    def is_full(self, cohort: list[SubjectID], group_size: int) -> bool:
        """True when the cohort should be promoted to a group immediately."""
        return len(cohort) >= group_size

    @abstractmethod
    def split_expired(self, cohort: list[SubjectID], group_size: int) -> CohortSplit:
        """Split a cohort whose wait time ran out.

        Args:
            cohort: Participant IDs in join order.
            group_size: Participants needed for a group session.

        Returns:
            CohortSplit: Every participant of ``cohort`` appears exactly once,
                either in ``group`` or in ``solos``.
        """
        ...


class TriadMatchmaker(Matchmaker):
    """Join-order matchmaking for triads.

    Example:
        With group_size=3:
        - [A]          -> group=[],        solos=[A]
        - [A, B]       -> group=[],        solos=[A, B]
        - [A, B, C, D] -> group=[A, B, C], solos=[D]
    """

    def split_expired(self, cohort: list[SubjectID], group_size: int) -> CohortSplit:
        if len(cohort) >= group_size:
            split = CohortSplit(group=list(cohort[:group_size]), solos=list(cohort[group_size:]))
        else:
            split = CohortSplit(group=[], solos=list(cohort))

        logger.info(
            f"[TriadMatchmaker] split_expired: cohort={cohort}, "
            f"group={split.group}, solos={split.solos}"
        )
        return split
