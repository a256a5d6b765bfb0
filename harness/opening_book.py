"""
Opening Book Sampler
Reads EPD/FEN position files and hands out starting positions
"""

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import chess

from .errors import BookExhausted, ConfigInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpeningPosition:
    """One starting position; identity is its index in the book"""
    index: int
    fen: str
    white_to_move: bool = True
    name: str = ""


START_POSITION = OpeningPosition(index=0, fen=chess.STARTING_FEN, white_to_move=True, name="startpos")


def load_positions(book_path: str, book_format: str = "epd") -> List[OpeningPosition]:
    """
    Read all records of a position file

    Args:
        book_path: Path to .epd or .fen file
        book_format: "epd" or "fen"

    Returns:
        Positions in file order
    """
    path = Path(book_path)
    if not path.exists():
        raise ConfigInvalid(f"Opening book not found: {book_path}")

    positions = []
    with open(path) as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            try:
                if book_format == "epd":
                    board, ops = chess.Board.from_epd(line)
                    name = str(ops.get("id", ""))
                else:
                    board = chess.Board(line)
                    name = ""
            except ValueError as e:
                raise ConfigInvalid(f"{path.name}:{line_number}: bad {book_format} record: {e}") from e

            positions.append(OpeningPosition(
                index=len(positions),
                fen=board.fen(),
                white_to_move=board.turn == chess.WHITE,
                name=name
            ))

    if not positions:
        raise ConfigInvalid(f"Opening book is empty: {book_path}")

    logger.info(f"Loaded opening book: {path.name} ({len(positions)} positions)")
    return positions


class PositionSampler:
    """
    Position sampler over an opening book

    Features:
    - Sequential or random order
    - Random order is a permutation, no position repeats within a pass
    - Optional wrap-around when the book runs out

    Not thread safe: one caller samples, others read the yielded positions.
    """

    def __init__(self,
                 positions: Optional[List[OpeningPosition]] = None,
                 order: str = "sequential",
                 allow_repeat: bool = True,
                 seed: Optional[int] = None):
        """
        Initialize sampler

        Args:
            positions: Book records; None plays every game from the start position
            order: "sequential" or "random"
            allow_repeat: Start a new pass once every position was used
            seed: Seed for the random permutation
        """
        if order not in ("sequential", "random"):
            raise ConfigInvalid(f"Unknown book order: {order}")

        self.positions = positions if positions else [START_POSITION]
        self.order = order
        self.allow_repeat = allow_repeat if positions else True
        self.rng = random.Random(seed)

        self.passes = 0
        self._pass_order: List[int] = []
        self._cursor = 0
        self._new_pass()

    @classmethod
    def from_file(cls, book_path: str, book_format: str = "epd", **kwargs) -> "PositionSampler":
        return cls(load_positions(book_path, book_format), **kwargs)

    def __len__(self) -> int:
        return len(self.positions)

    def _new_pass(self):
        self._pass_order = list(range(len(self.positions)))
        if self.order == "random":
            self.rng.shuffle(self._pass_order)
        self._cursor = 0
        self.passes += 1

    def check_capacity(self, count: int):
        """Raise BookExhausted up front if count positions cannot be served"""
        available = len(self._pass_order) - self._cursor
        if not self.allow_repeat and count > available:
            raise BookExhausted(
                f"Book has {available} unused positions but {count} are needed"
            )

    def next(self) -> OpeningPosition:
        """Return the next position, wrapping to a new pass when allowed"""
        if self._cursor >= len(self._pass_order):
            if not self.allow_repeat:
                raise BookExhausted(f"All {len(self.positions)} book positions used")
            logger.debug(f"Book pass {self.passes} complete, starting a new one")
            self._new_pass()

        position = self.positions[self._pass_order[self._cursor]]
        self._cursor += 1
        return position

    def take(self, count: int) -> List[OpeningPosition]:
        self.check_capacity(count)
        return [self.next() for _ in range(count)]
