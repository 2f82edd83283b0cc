"""Turn the hold list of a render payload into the move list the scene plays.

Clients send holds only; which limb goes where is derived here. Hands
alternate up the wall and each foot steps onto the hold its hand just left.
"""

from typing import Dict, List, Optional, Tuple

from .models import HoldEntry, JobPayload, RouteFile, RouteMove

ALGORITHM = "alternating-reach"
FOOT_FOR_HAND = {"LH": "LF", "RH": "RF"}


def _clamp01(v: float) -> float:
    return min(1.0, max(0.0, v))


def normalize_hold(hold: HoldEntry, image_width: int, image_height: int) -> Tuple[float, float]:
    """Wall coordinates in [0,1]; pixel y grows downward, wall ny grows upward."""
    if hold.nx is not None and hold.ny is not None:
        return _clamp01(hold.nx), _clamp01(hold.ny)
    nx = hold.x / max(1, image_width)
    ny = 1.0 - hold.y / max(1, image_height)
    return _clamp01(nx), _clamp01(ny)


def build_route(payload: JobPayload) -> RouteFile:
    placed = []
    for idx, hold in enumerate(payload.route):
        nx, ny = normalize_hold(hold, payload.image_width, payload.image_height)
        placed.append((idx, hold.id or f"hold-{idx}", nx, ny, hold.limb))
    # bottom-up; sorted() is stable so equal heights keep submission order
    placed.sort(key=lambda h: h[3])

    moves: List[RouteMove] = []
    hand_at: Dict[str, Optional[tuple]] = {"LH": None, "RH": None}
    next_hand = "LH"

    def add(limb: str, hold: tuple) -> None:
        idx, hold_id, nx, ny, _ = hold
        moves.append(
            RouteMove(step=len(moves) + 1, limb=limb, hold_idx=idx, hold_id=hold_id, nx=nx, ny=ny)
        )

    for hold in placed:
        explicit = hold[4]
        if explicit:
            add(explicit, hold)
            if explicit in hand_at:
                hand_at[explicit] = hold
            continue
        hand = next_hand
        left_behind = hand_at[hand]
        add(hand, hold)
        hand_at[hand] = hold
        if left_behind is not None:
            add(FOOT_FOR_HAND[hand], left_behind)
        next_hand = "RH" if hand == "LH" else "LH"

    return RouteFile(
        algorithm=ALGORITHM,
        total_moves=len(moves),
        total_holds=len(payload.route),
        final_height=max((m.ny for m in moves), default=0.0),
        image_width=payload.image_width,
        image_height=payload.image_height,
        moves=moves,
    )


def route_json(payload: JobPayload) -> str:
    return build_route(payload).model_dump_json()
