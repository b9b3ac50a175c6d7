"""Epic-aware claim resolution.

``resolve_claim`` is the pure selection step: given a target, its
descendants and the tracker's in-progress and ready lists it picks the
unit of work to claim, or reports that the container is complete.
``Claimer`` wires it to the tracker, the epic improvement cycle and git.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import YokeConfig
from .improvement import EPIC_PASS_COUNT, EpicImprover, validate_pass_limit
from .issue import Issue, branch_for_issue
from .status import CLOSED, IN_PROGRESS, OPEN, REVIEW_QUEUE_LABEL
from .tracker import Tracker
from .ui import Notes
from .util import YokeError
from .vcs import Git


EPIC_COMPLETE_CLOSE_REASON = "all-child-tasks-closed"


class NoClaimableChildError(YokeError):
    """Open work remains under a container but none of it can be claimed."""

    def __init__(self, container_id: str) -> None:
        super().__init__(
            f"epic {container_id} has no claimable child tasks "
            "(all remaining children are blocked or already claimed)"
        )
        self.container_id = container_id


@dataclass(frozen=True)
class ClaimDecision:
    selected_id: str = ""
    container_complete: bool = False


@dataclass(frozen=True)
class CandidateFilter:
    claimable: list[Issue] = field(default_factory=list)
    skipped_blocked: list[str] = field(default_factory=list)
    outside_container: int = 0


def filter_claim_candidates(
    candidates: Iterable[Issue],
    work_item_ids: set[str] | frozenset[str],
    has_open_blockers: Callable[[str], bool],
) -> CandidateFilter:
    """Keep candidates that belong to the container and have no open blockers.

    ``has_open_blockers`` is only called for candidates inside the container.
    """
    claimable: list[Issue] = []
    skipped: list[str] = []
    outside = 0
    for candidate in candidates:
        issue_id = candidate.id.strip()
        if not issue_id:
            continue
        if issue_id not in work_item_ids:
            outside += 1
            continue
        if has_open_blockers(issue_id):
            skipped.append(issue_id)
            continue
        claimable.append(candidate)
    return CandidateFilter(claimable=claimable, skipped_blocked=skipped, outside_container=outside)


def _work_items(descendants: Iterable[Issue]) -> dict[str, Issue]:
    items: dict[str, Issue] = {}
    for issue in descendants:
        issue_id = issue.id.strip()
        if not issue_id or issue.is_epic:
            continue
        items[issue_id] = issue
    return items


def resolve_claim(
    target: Issue,
    descendants: Sequence[Issue],
    in_progress: Sequence[Issue],
    ready: Sequence[Issue],
    *,
    has_open_blockers: Callable[[str], bool] | None = None,
) -> ClaimDecision:
    """Pick what to claim for ``target``.

    A non-epic target is claimed directly. For an epic, in-progress work
    under it wins over ready work; an epic whose non-epic descendants are
    all closed (or that has none) is complete. Anything else raises
    NoClaimableChildError.
    """
    if not target.is_epic:
        return ClaimDecision(selected_id=target.id)

    items = _work_items(descendants)
    if not items:
        return ClaimDecision(container_complete=True)

    blocked = has_open_blockers or (lambda _issue_id: False)
    ids = set(items)
    for pool in (in_progress, ready):
        found = filter_claim_candidates(pool, ids, blocked).claimable
        if found:
            return ClaimDecision(selected_id=found[0].id.strip())

    if all(issue.status == CLOSED for issue in items.values()):
        return ClaimDecision(container_complete=True)
    raise NoClaimableChildError(target.id)


@dataclass(frozen=True)
class ClaimResult:
    requested_id: str
    claimed_id: str = ""
    container_complete: bool = False
    previous_status: str = ""

    @property
    def branch(self) -> str:
        return branch_for_issue(self.claimed_id) if self.claimed_id else ""


class Claimer:
    def __init__(
        self,
        tracker: Tracker,
        git: Git,
        cfg: YokeConfig,
        root: Path,
        *,
        improver: EpicImprover | None = None,
        pass_limit: int = EPIC_PASS_COUNT,
        notes: Notes | None = None,
    ) -> None:
        self.tracker = tracker
        self.git = git
        self.cfg = cfg
        self.root = root
        self.notes = notes or Notes(prefix="[claim] ")
        self.improver = improver or EpicImprover(tracker, cfg, root, notes=self.notes)
        self.pass_limit = validate_pass_limit(pass_limit)

    def _load_candidates(self) -> tuple[list[Issue], list[Issue]]:
        self.notes.note("Loading in-progress issues for possible resume.")
        in_progress = self.tracker.list_issues(IN_PROGRESS)
        self.notes.note(f"Found {len(in_progress)} in-progress issue(s).")
        self.notes.note("Loading ready open issues for fallback selection.")
        ready = self.tracker.list_issues(OPEN, ready_only=True)
        self.notes.note(f"Found {len(ready)} ready open issue(s).")
        return in_progress, ready

    def _has_open_blockers(self, issue_id: str) -> bool:
        if self.tracker.has_open_blocking_dependencies(issue_id):
            self.notes.note(f"Skipping blocked issue: {issue_id}")
            return True
        return False

    def resolve(self, issue_id: str) -> ClaimDecision:
        self.notes.note(f"Loading issue details for {issue_id}")
        target = self.tracker.show_issue(issue_id)
        if not target.is_epic:
            self.notes.note("Issue is not an epic; proceeding with direct claim.")
            return ClaimDecision(selected_id=target.id or issue_id)
        if target.status == CLOSED:
            self.notes.note("Epic is already closed; no child task to claim.")
            return ClaimDecision(container_complete=True)

        self.notes.note(
            f"Issue is an epic; running epic improvement cycle (limit={self.pass_limit} pass(es)) "
            "before selecting a child task."
        )
        self.improver.run(target, self.pass_limit)

        self.notes.note("Auto-resolving clarification tasks that have comments.")
        closed = self.improver.close_clarified_tasks(target.id)
        if closed:
            self.notes.note(f"Auto-closed {closed} clarification task(s) from user comments.")
        else:
            self.notes.note("No clarification tasks required auto-close.")

        self.notes.note("Collecting epic descendants for claim selection.")
        descendants = self.tracker.collect_descendants(target.id)
        self.notes.note(f"Collected {len(descendants)} descendant issue(s).")
        in_progress, ready = self._load_candidates()

        try:
            decision = resolve_claim(
                target,
                descendants,
                in_progress,
                ready,
                has_open_blockers=self._has_open_blockers,
            )
        except NoClaimableChildError:
            self.notes.note("No claimable child task found; remaining work is blocked or already claimed.")
            raise

        if decision.selected_id:
            self.notes.note(f"Selected claimable child task: {decision.selected_id}")
            return decision

        self.notes.note("All non-epic descendants are closed; closing epic.")
        if self.tracker.issue_status(target.id) != CLOSED:
            self.notes.note(f"Closing epic {target.id} with reason {EPIC_COMPLETE_CLOSE_REASON}.")
            self.tracker.close_issue(target.id, EPIC_COMPLETE_CLOSE_REASON)
        else:
            self.notes.note("Epic already closed; no close command needed.")
        return decision

    def claim(self, issue_id: str | None = None) -> ClaimResult:
        requested = (issue_id or "").strip()
        if requested:
            self.notes.note(f"Using explicit issue argument: {requested}")
        else:
            self.notes.note("No issue argument provided; selecting next ready open issue from bd.")
            requested = self.tracker.next_issue_id()
        if not requested:
            raise YokeError("no issue provided and bd ready returned nothing")

        decision = self.resolve(requested)
        if decision.container_complete:
            self.notes.success(f"Epic {requested} is complete; closed epic.")
            return ClaimResult(requested_id=requested, container_complete=True)

        claimed = decision.selected_id
        if claimed != requested:
            self.notes.success(f"Epic {requested} -> claiming child task {claimed}")
        previous = self.tracker.issue_status(claimed)

        self.notes.note("Transitioning issue to in_progress and removing review queue label if present.")
        self.tracker.update_status(claimed, IN_PROGRESS, remove_labels=[REVIEW_QUEUE_LABEL])

        branch = branch_for_issue(claimed)
        self.notes.note(f"Preparing git branch: {branch}")
        if self.git.switch_branch(branch):
            self.notes.note("Branch did not exist; created it.")
        self.notes.success(f"Claimed {claimed} on branch {branch}")
        self.notes.note(f'Next: yoke submit {claimed} --done "..." --remaining "..."')
        return ClaimResult(
            requested_id=requested,
            claimed_id=claimed,
            previous_status=previous,
        )
