"""Board rules on top of python-chess.

MoveRules is the seam the pipeline uses for move application and game
replay; the module-level helpers are the small board heuristics the
detector and builder share (material, tactical moves, game phase).
"""

from __future__ import annotations

import io

import chess
import chess.pgn

from blunder_miner.errors import IllegalPositionOrMove

# Piece values in pawns, king excluded from material counts
_PIECE_VALUES: dict[int, int] = {
    chess.PAWN: 1,
    chess.KNIGHT: 3,
    chess.BISHOP: 3,
    chess.ROOK: 5,
    chess.QUEEN: 9,
    chess.KING: 0,
}

# Non-pawn material (both sides, in pawns) at or below which a position
# counts as an endgame. Two rooks and a minor piece each is 26.
_ENDGAME_MATERIAL = 26
_OPENING_PLIES = 20


def piece_value(piece_type: int) -> int:
    return _PIECE_VALUES.get(piece_type, 0)


def board_from_fen(fen: str) -> chess.Board:
    """Parse a FEN, raising IllegalPositionOrMove instead of ValueError."""
    try:
        return chess.Board(fen)
    except ValueError as exc:
        raise IllegalPositionOrMove(f"invalid FEN {fen!r}: {exc}") from exc


def parse_move(board: chess.Board, move: str) -> chess.Move:
    """Parse a UCI or SAN move that must be legal on board."""
    text = move.strip()
    try:
        parsed = chess.Move.from_uci(text)
        if parsed in board.legal_moves:
            return parsed
    except ValueError:
        pass
    try:
        return board.parse_san(text)
    except ValueError as exc:
        raise IllegalPositionOrMove(
            f"illegal move {move!r} in {board.fen()}"
        ) from exc


class MoveRules:
    """Legal-move generation, SAN conversion and game replay."""

    def apply_move(self, fen: str, move: str) -> tuple[str, str]:
        """Play move (UCI or SAN) from fen.

        Returns:
            Tuple of (new FEN, SAN of the move).

        Raises:
            IllegalPositionOrMove: If the FEN is invalid or the move is
                not legal there.
        """
        board = board_from_fen(fen)
        parsed = parse_move(board, move)
        san = board.san(parsed)
        board.push(parsed)
        return board.fen(), san

    def legal_moves(self, fen: str) -> dict[str, set[str]]:
        """Legal destinations grouped by origin square name."""
        board = board_from_fen(fen)
        result: dict[str, set[str]] = {}
        for move in board.legal_moves:
            origin = chess.square_name(move.from_square)
            result.setdefault(origin, set()).add(chess.square_name(move.to_square))
        return result

    def replay(self, start_fen: str | None, moves: list[str], through_ply: int) -> str:
        """Position before moves[through_ply], i.e. after moves[:through_ply]."""
        if through_ply < 0 or through_ply > len(moves):
            raise IllegalPositionOrMove(
                f"ply {through_ply} is outside a game of {len(moves)} plies"
            )
        board = board_from_fen(start_fen or chess.STARTING_FEN)
        for move in moves[:through_ply]:
            board.push(parse_move(board, move))
        return board.fen()


# ---------------------------------------------------------------------------
# PGN
# ---------------------------------------------------------------------------


def parse_pgn_moves(pgn: str) -> tuple[str, list[str], dict[str, str]]:
    """Read the mainline of a PGN.

    Returns:
        Tuple of (start FEN, UCI moves, header dict). When the PGN has
        an illegal move, python-chess stops the mainline there; the
        moves before it are returned.

    Raises:
        IllegalPositionOrMove: If no game can be read at all.
    """
    try:
        game = chess.pgn.read_game(io.StringIO(pgn))
    except (ValueError, KeyError) as exc:
        raise IllegalPositionOrMove(f"unreadable PGN: {exc}") from exc
    if game is None:
        raise IllegalPositionOrMove("empty PGN")

    try:
        board = game.board()
    except ValueError as exc:
        raise IllegalPositionOrMove(f"bad setup position: {exc}") from exc

    moves = [move.uci() for move in game.mainline_moves()]
    if not moves and game.errors:
        raise IllegalPositionOrMove(f"unreadable PGN: {game.errors[0]}")
    return board.fen(), moves, dict(game.headers)


def san_moves(start_fen: str, uci_moves: list[str], limit: int | None = None) -> list[str]:
    """SAN for a UCI sequence from start_fen, stopping at the first illegal move."""
    board = board_from_fen(start_fen)
    result: list[str] = []
    for uci in uci_moves[:limit]:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in board.legal_moves:
            break
        result.append(board.san(move))
        board.push(move)
    return result


# ---------------------------------------------------------------------------
# Position heuristics
# ---------------------------------------------------------------------------


def side_to_move(fen: str) -> str:
    parts = fen.split()
    return "b" if len(parts) > 1 and parts[1] == "b" else "w"


def non_king_piece_count(fen: str) -> int:
    """Count pieces other than kings, pawns included."""
    placement = fen.split()[0] if fen else ""
    return sum(1 for c in placement if c.isalpha() and c not in "Kk")


def material_by_color(fen: str) -> dict[str, int]:
    board = board_from_fen(fen)
    totals = {"w": 0, "b": 0}
    for piece in board.piece_map().values():
        key = "w" if piece.color == chess.WHITE else "b"
        totals[key] += piece_value(piece.piece_type)
    return totals


def uci_to_san(fen: str, uci: str) -> str | None:
    converted = san_moves(fen, [uci])
    return converted[0] if converted else None


def pv_to_san(fen: str, pv: list[str] | tuple[str, ...], max_plies: int | None = None) -> str:
    """Render a principal variation as space-separated SAN."""
    return " ".join(san_moves(fen, list(pv), max_plies))


def apply_uci_plies(fen: str, uci_line: list[str] | tuple[str, ...], max_plies: int) -> tuple[str, int]:
    """Apply up to max_plies moves of a line; returns (fen, plies applied)."""
    board = board_from_fen(fen)
    applied = 0
    for uci in list(uci_line)[:max_plies]:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in board.legal_moves:
            break
        board.push(move)
        applied += 1
    return board.fen(), applied


def is_tactical_move(board: chess.Board, move: chess.Move) -> bool:
    """Check, capture or promotion."""
    return (
        move.promotion is not None
        or board.is_capture(move)
        or board.gives_check(move)
    )


def pv_contains_tactic(fen: str, pv: list[str] | tuple[str, ...], lookahead_plies: int) -> bool:
    """True if a check, capture or promotion occurs in the first plies of pv."""
    board = board_from_fen(fen)
    for uci in list(pv)[:lookahead_plies]:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            return False
        if move not in board.legal_moves:
            return False
        if is_tactical_move(board, move):
            return True
        board.push(move)
    return False


def is_material_sacrifice(fen: str, uci: str) -> bool:
    """Heuristic: does the move leave more material en prise than it takes?

    The moved piece lands on a square the opponent attacks, and either
    nothing defends it or the cheapest attacker is worth less than the
    piece, after accounting for whatever the move captured.
    """
    board = board_from_fen(fen)
    try:
        move = chess.Move.from_uci(uci)
    except ValueError:
        return False
    if move not in board.legal_moves:
        return False

    moving = board.piece_at(move.from_square)
    if moving is None or moving.piece_type in (chess.PAWN, chess.KING):
        return False
    captured = board.piece_at(move.to_square)
    gained = piece_value(captured.piece_type) if captured else 0
    if board.is_en_passant(move):
        gained = 1

    after = board.copy()
    after.push(move)
    value = piece_value(
        move.promotion if move.promotion else moving.piece_type
    )
    attackers = after.attackers(not moving.color, move.to_square)
    if not attackers:
        return False
    defenders = after.attackers(moving.color, move.to_square)
    cheapest = min(piece_value(after.piece_at(sq).piece_type) or 100 for sq in attackers)

    if not defenders:
        return value > gained
    return cheapest < value and value - cheapest > gained


def game_phase(fen: str, ply: int) -> str:
    """Classify a position as opening, middlegame or endgame."""
    board = board_from_fen(fen)
    non_pawn = sum(
        piece_value(p.piece_type)
        for p in board.piece_map().values()
        if p.piece_type not in (chess.PAWN, chess.KING)
    )
    if non_pawn <= _ENDGAME_MATERIAL:
        return "endgame"
    if ply < _OPENING_PLIES:
        return "opening"
    return "middlegame"
