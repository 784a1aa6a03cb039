# src/domain/seat_allocator.py

"""
Seat assignment for a group of tickets inside one performance.

Seat layout per row (seat numbers are 1-based, rows 0-based):

    [1, 2]       left zone
    [3 .. N-2]   normal zone
    [N-1, N]     right zone (preferred for wheelchair groups)

Normal groups fill the normal zone first, then spill into the left zone, and
only take the right zone as a last resort, so wheelchair places stay free as
long as possible. Wheelchair groups take the right end of a row, then the
left end, then fall back to the normal logic.

Everything here is pure: occupancy comes in as a set of (row_index,
seat_number) tuples and is never mutated.
"""

from dataclasses import dataclass
from typing import AbstractSet, Iterable, List, Optional, Sequence, Tuple

SeatKey = Tuple[int, int]

LEFT_ZONE_MAX = 2
NORMAL_ZONE_MIN = 3


@dataclass(frozen=True)
class Seat:
    row_index: int
    seat_number: int
    wheelchair_access: bool = False

    @property
    def key(self) -> SeatKey:
        return (self.row_index, self.seat_number)

    @property
    def label(self) -> str:
        return seat_label(self.row_index, self.seat_number)


def row_letter(row_index: int) -> str:
    """A, B, ... Z, AA, AB, ... like spreadsheet columns."""
    letters = ""
    index = row_index
    while True:
        index, remainder = divmod(index, 26)
        letters = chr(65 + remainder) + letters
        if index == 0:
            return letters
        index -= 1


def seat_label(row_index: int, seat_number: int) -> str:
    return f"{row_letter(row_index)}{seat_number}"


def occupancy_from(seats: Iterable[SeatKey]) -> frozenset:
    return frozenset((int(row), int(number)) for row, number in seats)


def get_contiguous_blocks(
    occupied: AbstractSet[SeatKey],
    row_index: int,
    min_seat: int,
    max_seat: int,
) -> List[List[int]]:
    """
    Maximal runs of free seats in one row between min_seat and max_seat
    (inclusive), scanned in ascending order.
    """
    blocks: List[List[int]] = []
    current: List[int] = []

    for seat_number in range(min_seat, max_seat + 1):
        if (row_index, seat_number) in occupied:
            if current:
                blocks.append(current)
                current = []
        else:
            current.append(seat_number)

    if current:
        blocks.append(current)
    return blocks


def pick_best_block(
    blocks: Sequence[Sequence[int]],
    quantity: int,
    accept_remainder_one: bool,
) -> Optional[List[int]]:
    """
    Picks the block that fits the group with the smallest leftover.

    An exact fit wins outright. A leftover of exactly one seat is skipped
    unless accept_remainder_one is set, because it strands a single seat.
    Ties keep the first block found. Seats come from the start of the block.
    """
    best: Optional[List[int]] = None
    best_remainder: Optional[int] = None

    for block in blocks:
        if len(block) < quantity:
            continue
        remainder = len(block) - quantity
        if remainder == 1 and not accept_remainder_one:
            continue
        if best_remainder is None or remainder < best_remainder:
            best = list(block[:quantity])
            best_remainder = remainder
            if remainder == 0:
                break

    return best


def _edge_block_free(
    occupied: AbstractSet[SeatKey],
    row_index: int,
    start_seat: int,
    end_seat: int,
) -> bool:
    return all(
        (row_index, seat_number) not in occupied
        for seat_number in range(start_seat, end_seat + 1)
    )


def _assign_wheelchair_edges(
    occupied: AbstractSet[SeatKey],
    rows: int,
    seats_per_row: int,
    quantity: int,
) -> Optional[List[SeatKey]]:
    if quantity > seats_per_row:
        return None

    right_start = seats_per_row - quantity + 1
    for row_index in range(rows):
        if _edge_block_free(occupied, row_index, right_start, seats_per_row):
            return [(row_index, s) for s in range(right_start, seats_per_row + 1)]

    for row_index in range(rows):
        if _edge_block_free(occupied, row_index, 1, quantity):
            return [(row_index, s) for s in range(1, quantity + 1)]

    return None


def _assign_normal(
    occupied: AbstractSet[SeatKey],
    rows: int,
    seats_per_row: int,
    quantity: int,
) -> List[SeatKey]:
    normal_max = seats_per_row - LEFT_ZONE_MAX
    phases = (
        (NORMAL_ZONE_MIN, normal_max, False),
        (1, normal_max, False),
        (1, seats_per_row, True),
    )

    for row_index in range(rows):
        for min_seat, max_seat, accept_remainder_one in phases:
            if min_seat > max_seat:
                continue
            blocks = get_contiguous_blocks(occupied, row_index, min_seat, max_seat)
            block = pick_best_block(blocks, quantity, accept_remainder_one)
            if block is not None:
                return [(row_index, s) for s in block]

    return _fluid_fill(occupied, rows, seats_per_row, quantity)


def _fluid_fill(
    occupied: AbstractSet[SeatKey],
    rows: int,
    seats_per_row: int,
    quantity: int,
) -> List[SeatKey]:
    seats: List[SeatKey] = []
    for row_index in range(rows):
        for seat_number in range(1, seats_per_row + 1):
            if len(seats) >= quantity:
                return seats
            if (row_index, seat_number) not in occupied:
                seats.append((row_index, seat_number))
    return seats


def assign_seats(
    occupied: AbstractSet[SeatKey],
    rows: int,
    seats_per_row: int,
    quantity: int,
    wheelchair_access: bool,
) -> List[Seat]:
    """
    Returns the seats for one group, or fewer seats (possibly none) when the
    venue cannot hold the whole group.

    Calling this repeatedly while adding each result to the occupied set
    processes a batch of groups deterministically in arrival order.
    """
    if quantity <= 0 or rows <= 0 or seats_per_row <= 0:
        return []

    keys: Optional[List[SeatKey]] = None
    if wheelchair_access:
        keys = _assign_wheelchair_edges(occupied, rows, seats_per_row, quantity)
    if keys is None:
        keys = _assign_normal(occupied, rows, seats_per_row, quantity)

    accessible: Optional[SeatKey] = None
    if wheelchair_access:
        accessible = next(
            (key for key in keys if key[1] in (1, seats_per_row)),
            None,
        )

    return [
        Seat(row_index=row, seat_number=number, wheelchair_access=(row, number) == accessible)
        for row, number in keys
    ]
