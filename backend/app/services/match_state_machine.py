"""
Match protocol: ready-up -> map veto -> side selection -> play -> results -> (dispute) -> complete.

The transition table below is the single source of truth for which actions
are legal in which state. plan_transition() looks the (state, action) pair up
first and only then runs the action's handler, so an illegal pair can never
reach handler code.

Handlers are pure. They read a Match (never mutate it) and return a
Transition describing the column changes to apply with compare-and-swap,
plus any veto entry / dispute record to stage in the same transaction.
Authorization (is the caller a participant captain / an admin) happens in
match_service before planning; handlers receive the acting slot.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from app.models.map_veto import MapVetoEntry
from app.models.match import Match, MatchState
from app.models.match_dispute import DISPUTE_MANUAL, DISPUTE_SCORE_MISMATCH
from app.models.tournament import SideSelectionMethod
from app.services.engine_errors import (
    DuplicateDispute,
    InvalidScore,
    InvalidSide,
    InvalidTransition,
    OutOfTurn,
    TieScoreRejected,
)
from app.services.veto_engine import (
    DEFAULT_MAP_POOL,
    VetoOutcome,
    apply_ban,
    terminal_map_count,
    validate_map_pool,
)

SIDES = ("attack", "defense")
FORFEIT_SCORE = (1, 0)

EVENT_STATE_CHANGED = "match_state_changed"
EVENT_DISPUTE_OPENED = "dispute_opened"
EVENT_MATCH_COMPLETED = "match_completed"


class MatchAction(str, Enum):
    open_ready_up = "open_ready_up"
    ready = "ready"
    unready = "unready"
    ready_timeout = "ready_timeout"
    ban_map = "ban_map"
    choose_side = "choose_side"
    submit_score = "submit_score"
    flag_dispute = "flag_dispute"
    dismiss_dispute = "dismiss_dispute"
    override_score = "override_score"
    set_veto_order = "set_veto_order"
    force_forfeit = "force_forfeit"
    cancel = "cancel"


# Who may request an action. open_ready_up accepts either a participant or an admin.
TEAM_ACTIONS = frozenset({
    MatchAction.ready,
    MatchAction.unready,
    MatchAction.ban_map,
    MatchAction.choose_side,
    MatchAction.submit_score,
    MatchAction.flag_dispute,
})
ADMIN_ACTIONS = frozenset({
    MatchAction.dismiss_dispute,
    MatchAction.override_score,
    MatchAction.set_veto_order,
    MatchAction.force_forfeit,
    MatchAction.cancel,
})
SYSTEM_ACTIONS = frozenset({MatchAction.ready_timeout})

S = MatchState
A = MatchAction

TRANSITIONS: Dict[Tuple[MatchState, MatchAction], FrozenSet[MatchState]] = {
    (S.scheduled, A.open_ready_up): frozenset({S.ready_up}),
    (S.ready_up, A.ready): frozenset({S.ready_up, S.map_banning, S.side_selection}),
    (S.ready_up, A.unready): frozenset({S.ready_up}),
    (S.ready_up, A.ready_timeout): frozenset({S.complete}),
    (S.map_banning, A.ban_map): frozenset({S.map_banning, S.side_selection}),
    (S.side_selection, A.choose_side): frozenset({S.playing}),
    (S.playing, A.submit_score): frozenset({S.waiting_results}),
    (S.waiting_results, A.submit_score): frozenset({S.complete, S.disputed}),
    (S.waiting_results, A.flag_dispute): frozenset({S.disputed}),
    (S.disputed, A.dismiss_dispute): frozenset({S.playing}),
    (S.disputed, A.override_score): frozenset({S.complete}),
    (S.scheduled, A.set_veto_order): frozenset({S.scheduled}),
    (S.ready_up, A.set_veto_order): frozenset({S.ready_up}),
    (S.map_banning, A.set_veto_order): frozenset({S.map_banning}),
}
# Admin overrides reach every non-terminal state
for _state in MatchState:
    if _state is not S.complete:
        TRANSITIONS[(_state, A.force_forfeit)] = frozenset({S.complete})
        TRANSITIONS[(_state, A.cancel)] = frozenset({S.scheduled})


@dataclass
class MatchRules:
    """Per-tournament knobs the protocol needs."""
    ready_timeout: timedelta = timedelta(minutes=15)
    side_selection: str = SideSelectionMethod.veto_loser.value
    random_seed: int = 0
    map_pool: List[str] = field(default_factory=lambda: list(DEFAULT_MAP_POOL))


@dataclass
class ActionRequest:
    action: MatchAction
    slot: Optional[int] = None  # acting team slot (team actions)
    actor_id: Optional[str] = None
    map_name: Optional[str] = None
    side: Optional[str] = None
    team1_score: Optional[int] = None
    team2_score: Optional[int] = None
    winner_slot: Optional[int] = None
    first_slot: Optional[int] = None
    note: Optional[str] = None


@dataclass
class Transition:
    action: MatchAction
    from_state: MatchState
    to_state: MatchState
    changes: Dict[str, Any]
    veto: Optional[VetoOutcome] = None
    dispute: Optional[Dict[str, Any]] = None
    completed: bool = False
    events: List[str] = field(default_factory=list)


def allowed_actions(state: MatchState) -> List[MatchAction]:
    return [a for (s, a) in TRANSITIONS if s == state]


def plan_transition(
    match: Match,
    request: ActionRequest,
    rules: MatchRules,
    now: datetime,
    veto_entries: Sequence[MapVetoEntry] = (),
) -> Transition:
    """Validate (state, action) and compute the transition. Raises an EngineError on any precondition failure."""
    state = match.state
    if state == S.disputed and request.action == A.flag_dispute:
        raise DuplicateDispute("Match already has an open dispute", match_id=match.id)

    targets = TRANSITIONS.get((state, request.action))
    if targets is None:
        raise InvalidTransition(
            f"Cannot {request.action.value} while match is {state.value}", match_id=match.id
        )

    transition = _HANDLERS[request.action](match, request, rules, now, veto_entries)
    if transition.to_state not in targets:
        raise InvalidTransition(
            f"{request.action.value} from {state.value} cannot lead to {transition.to_state.value}",
            match_id=match.id,
        )
    if transition.to_state != state:
        transition.changes["match_state"] = transition.to_state.value
        transition.events.insert(0, EVENT_STATE_CHANGED)
    return transition


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _other(slot: int) -> int:
    return 2 if slot == 1 else 1


def _validate_scores(match: Match, team1_score: Optional[int], team2_score: Optional[int]) -> Tuple[int, int]:
    if team1_score is None or team2_score is None:
        raise InvalidScore("Both scores are required", match_id=match.id)
    if team1_score < 0 or team2_score < 0:
        raise InvalidScore("Scores cannot be negative", match_id=match.id)
    if team1_score == team2_score:
        raise TieScoreRejected(f"Tied score {team1_score}-{team2_score} is not a valid result", match_id=match.id)
    return team1_score, team2_score


def _completion_changes(match: Match, team1_score: int, team2_score: int, now: datetime) -> Dict[str, Any]:
    winner = match.team1_id if team1_score > team2_score else match.team2_id
    return {
        "team1_score": team1_score,
        "team2_score": team2_score,
        "winner_team_id": winner,
        "is_complete": True,
        "completed_at": now,
        "ready_deadline": None,
    }


def _forfeit_scores(winner_slot: int) -> Tuple[int, int]:
    win, lose = FORFEIT_SCORE
    return (win, lose) if winner_slot == 1 else (lose, win)


def side_chooser_slot(match: Match, rules: MatchRules, last_ban_slot: Optional[int]) -> int:
    """veto-loser: the team that did not make the final ban; coin-flip: seeded draw."""
    if rules.side_selection == SideSelectionMethod.coin_flip.value:
        rng = random.Random(f"{rules.random_seed}:{match.id}:{match.veto_attempt}")
        return rng.choice((1, 2))
    if last_ban_slot is not None:
        return _other(last_ban_slot)
    return _other(match.veto_first_slot)


def _enter_side_selection(
    match: Match, rules: MatchRules, series_maps: List[str], last_ban_slot: Optional[int]
) -> Dict[str, Any]:
    chooser = side_chooser_slot(match, rules, last_ban_slot)
    return {
        "selected_maps": list(series_maps),
        "side_chooser_team_id": match.team_in_slot(chooser),
        "team1_side": None,
        "team2_side": None,
    }


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

def _open_ready_up(match, request, rules, now, veto_entries) -> Transition:
    if match.team1_id is None or match.team2_id is None:
        raise InvalidTransition("Both team slots must be resolved before ready-up", match_id=match.id)
    return Transition(
        action=request.action,
        from_state=match.state,
        to_state=S.ready_up,
        changes={
            "team1_ready": False,
            "team2_ready": False,
            "ready_deadline": now + rules.ready_timeout,
        },
    )


def _ready(match, request, rules, now, veto_entries) -> Transition:
    slot = request.slot
    already = match.team1_ready if slot == 1 else match.team2_ready
    if already:
        raise InvalidTransition(f"Team {slot} is already ready", match_id=match.id)

    changes: Dict[str, Any] = {f"team{slot}_ready": True}
    opponent_ready = match.team2_ready if slot == 1 else match.team1_ready
    if not opponent_ready:
        return Transition(request.action, match.state, S.ready_up, changes)

    pool = list(match.map_pool) if match.map_pool else list(rules.map_pool)
    validate_map_pool(pool, match.best_of)
    changes.update({"map_pool": pool, "ready_deadline": None})
    if len(pool) == terminal_map_count(match.best_of):
        # Nothing to ban: the pool already is the series
        changes.update(_enter_side_selection(match, rules, pool, None))
        return Transition(request.action, match.state, S.side_selection, changes)
    return Transition(request.action, match.state, S.map_banning, changes)


def _unready(match, request, rules, now, veto_entries) -> Transition:
    slot = request.slot
    is_ready = match.team1_ready if slot == 1 else match.team2_ready
    if not is_ready:
        raise InvalidTransition(f"Team {slot} is not ready", match_id=match.id)
    return Transition(
        request.action,
        match.state,
        S.ready_up,
        {f"team{slot}_ready": False, "ready_deadline": now + rules.ready_timeout},
    )


def _ready_timeout(match, request, rules, now, veto_entries) -> Transition:
    if match.ready_deadline is None or now < match.ready_deadline:
        raise InvalidTransition("Ready-up window has not expired", match_id=match.id)
    if match.team1_ready == match.team2_ready:
        # Both ready cannot happen here (that leaves ready_up); neither ready has no winner.
        raise InvalidTransition("Neither team readied up; an admin must decide the match", match_id=match.id)
    winner_slot = 1 if match.team1_ready else 2
    t1, t2 = _forfeit_scores(winner_slot)
    changes = _completion_changes(match, t1, t2, now)
    changes["forfeit"] = True
    return Transition(request.action, match.state, S.complete, changes, completed=True, events=[EVENT_MATCH_COMPLETED])


def _ban_map(match, request, rules, now, veto_entries) -> Transition:
    outcome = apply_ban(match, veto_entries, match.team_in_slot(request.slot), request.map_name)
    if not outcome.complete:
        return Transition(request.action, match.state, S.map_banning, {}, veto=outcome)
    changes = _enter_side_selection(match, rules, outcome.series_maps, request.slot)
    return Transition(request.action, match.state, S.side_selection, changes, veto=outcome)


def _choose_side(match, request, rules, now, veto_entries) -> Transition:
    if match.team_in_slot(request.slot) != match.side_chooser_team_id:
        raise OutOfTurn("Only the side-choosing team may pick a side", match_id=match.id)
    if request.side not in SIDES:
        raise InvalidSide(f"Side must be one of {', '.join(SIDES)}", match_id=match.id)
    other_side = SIDES[1] if request.side == SIDES[0] else SIDES[0]
    sides = {request.slot: request.side, _other(request.slot): other_side}
    return Transition(
        request.action,
        match.state,
        S.playing,
        {"team1_side": sides[1], "team2_side": sides[2], "started_at": now},
    )


def _submit_score(match, request, rules, now, veto_entries) -> Transition:
    slot = request.slot
    own = match.team1_submission if slot == 1 else match.team2_submission
    if own is not None:
        raise InvalidTransition(f"Team {slot} has already submitted a result", match_id=match.id)
    t1, t2 = _validate_scores(match, request.team1_score, request.team2_score)
    submission = {
        "team1_score": t1,
        "team2_score": t2,
        "submitted_by": request.actor_id,
        "submitted_at": now.isoformat(),
    }
    changes: Dict[str, Any] = {f"team{slot}_submission": submission}

    other = match.team2_submission if slot == 1 else match.team1_submission
    if other is None:
        return Transition(request.action, match.state, S.waiting_results, changes)

    sub1 = submission if slot == 1 else other
    sub2 = other if slot == 1 else submission
    if (sub1["team1_score"], sub1["team2_score"]) == (sub2["team1_score"], sub2["team2_score"]):
        changes.update(_completion_changes(match, t1, t2, now))
        return Transition(request.action, match.state, S.complete, changes, completed=True, events=[EVENT_MATCH_COMPLETED])

    dispute = {
        "reason": DISPUTE_SCORE_MISMATCH,
        "raised_by": "system",
        "note": (
            f"Team 1 reported {sub1['team1_score']}-{sub1['team2_score']}, "
            f"team 2 reported {sub2['team1_score']}-{sub2['team2_score']}"
        ),
        "team1_submission": sub1,
        "team2_submission": sub2,
    }
    return Transition(request.action, match.state, S.disputed, changes, dispute=dispute, events=[EVENT_DISPUTE_OPENED])


def _flag_dispute(match, request, rules, now, veto_entries) -> Transition:
    """Contest the opponent's report by attaching a conflicting one of our own."""
    slot = request.slot
    own = match.team1_submission if slot == 1 else match.team2_submission
    other = match.team2_submission if slot == 1 else match.team1_submission
    if own is not None or other is None:
        raise InvalidTransition(
            "A dispute can only contest the opponent's report with your own", match_id=match.id
        )
    t1, t2 = _validate_scores(match, request.team1_score, request.team2_score)
    if (t1, t2) == (other["team1_score"], other["team2_score"]):
        raise InvalidTransition("Reported score matches the opponent's; submit it instead", match_id=match.id)
    submission = {
        "team1_score": t1,
        "team2_score": t2,
        "submitted_by": request.actor_id,
        "submitted_at": now.isoformat(),
    }
    sub1 = submission if slot == 1 else other
    sub2 = other if slot == 1 else submission
    dispute = {
        "reason": DISPUTE_MANUAL,
        "raised_by": request.actor_id,
        "note": request.note,
        "team1_submission": sub1,
        "team2_submission": sub2,
    }
    changes = {f"team{slot}_submission": submission}
    return Transition(request.action, match.state, S.disputed, changes, dispute=dispute, events=[EVENT_DISPUTE_OPENED])


def _dismiss_dispute(match, request, rules, now, veto_entries) -> Transition:
    return Transition(
        request.action,
        match.state,
        S.playing,
        {"team1_submission": None, "team2_submission": None},
    )


def _override_score(match, request, rules, now, veto_entries) -> Transition:
    t1, t2 = _validate_scores(match, request.team1_score, request.team2_score)
    changes = _completion_changes(match, t1, t2, now)
    return Transition(request.action, match.state, S.complete, changes, completed=True, events=[EVENT_MATCH_COMPLETED])


def _set_veto_order(match, request, rules, now, veto_entries) -> Transition:
    if request.first_slot not in (1, 2):
        raise InvalidTransition("First banning slot must be 1 or 2", match_id=match.id)
    if veto_entries:
        raise InvalidTransition("Ban order cannot change after the first ban", match_id=match.id)
    return Transition(request.action, match.state, match.state, {"veto_first_slot": request.first_slot})


def _force_forfeit(match, request, rules, now, veto_entries) -> Transition:
    if request.winner_slot not in (1, 2):
        raise InvalidTransition("Winner slot must be 1 or 2", match_id=match.id)
    if match.team1_id is None or match.team2_id is None:
        raise InvalidTransition("Cannot forfeit a match with an unresolved slot", match_id=match.id)
    t1, t2 = _forfeit_scores(request.winner_slot)
    changes = _completion_changes(match, t1, t2, now)
    changes["forfeit"] = True
    return Transition(request.action, match.state, S.complete, changes, completed=True, events=[EVENT_MATCH_COMPLETED])


def _cancel(match, request, rules, now, veto_entries) -> Transition:
    return Transition(
        request.action,
        match.state,
        S.scheduled,
        {
            "team1_ready": False,
            "team2_ready": False,
            "ready_deadline": None,
            "veto_attempt": match.veto_attempt + 1,
            "selected_maps": None,
            "side_chooser_team_id": None,
            "team1_side": None,
            "team2_side": None,
            "team1_submission": None,
            "team2_submission": None,
            "started_at": None,
        },
    )


_HANDLERS: Dict[MatchAction, Callable[..., Transition]] = {
    A.open_ready_up: _open_ready_up,
    A.ready: _ready,
    A.unready: _unready,
    A.ready_timeout: _ready_timeout,
    A.ban_map: _ban_map,
    A.choose_side: _choose_side,
    A.submit_score: _submit_score,
    A.flag_dispute: _flag_dispute,
    A.dismiss_dispute: _dismiss_dispute,
    A.override_score: _override_score,
    A.set_veto_order: _set_veto_order,
    A.force_forfeit: _force_forfeit,
    A.cancel: _cancel,
}

_unhandled = set(MatchAction) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Match actions without handlers: {sorted(a.value for a in _unhandled)}")
