"""Tactical motif tags for puzzle solutions.

Looks at the solver's moves in a solution line and names the tactical
themes they contain (fork, pin, skewer, discovered attack, ...). Tags
are used for filtering puzzles, never for accepting or rejecting them.
"""

from __future__ import annotations

import chess

from blunder_miner.rules import board_from_fen, piece_value

_SLIDERS = (chess.BISHOP, chess.ROOK, chess.QUEEN)

# Order matters: the first tag is the puzzle's primary motif.
MOTIF_TAGS = (
    "backRankMate",
    "mate",
    "doubleCheck",
    "discoveredAttack",
    "fork",
    "pin",
    "skewer",
    "promotion",
)


def _valuable(piece: chess.Piece | None, color: chess.Color) -> bool:
    """Enemy piece worth at least a minor piece (kings included)."""
    if piece is None or piece.color != color:
        return False
    return piece.piece_type == chess.KING or piece_value(piece.piece_type) >= 3


def _is_fork(after: chess.Board, move: chess.Move) -> bool:
    moved = after.piece_at(move.to_square)
    if moved is None:
        return False
    enemy = not moved.color
    # A piece that can simply be taken by a cheaper one forks nothing.
    if after.is_attacked_by(enemy, move.to_square) and not after.is_check():
        cheapest = min(
            piece_value(after.piece_at(sq).piece_type) or 100
            for sq in after.attackers(enemy, move.to_square)
        )
        if cheapest < piece_value(moved.piece_type):
            return False
    targets = [
        sq for sq in after.attacks(move.to_square)
        if _valuable(after.piece_at(sq), enemy)
    ]
    return len(targets) >= 2


def _is_pin(after: chess.Board, move: chess.Move) -> bool:
    moved = after.piece_at(move.to_square)
    if moved is None or moved.piece_type not in _SLIDERS:
        return False
    enemy = not moved.color
    mover_bb = chess.BB_SQUARES[move.to_square]
    for sq, piece in after.piece_map().items():
        if piece.color != enemy or piece.piece_type in (chess.KING, chess.PAWN):
            continue
        if after.is_pinned(enemy, sq) and int(after.pin(enemy, sq)) & mover_bb:
            return True
    return False


def _is_skewer(after: chess.Board, move: chess.Move) -> bool:
    moved = after.piece_at(move.to_square)
    if moved is None or moved.piece_type not in _SLIDERS:
        return False
    enemy = not moved.color
    for front_sq in after.attacks(move.to_square):
        front = after.piece_at(front_sq)
        if not _valuable(front, enemy):
            continue
        # Squares beyond the front piece on the same line, nearest first.
        beyond = sorted(
            (
                sq for sq in chess.SquareSet(chess.ray(move.to_square, front_sq))
                if front_sq in chess.SquareSet(chess.between(move.to_square, sq))
            ),
            key=lambda sq: chess.square_distance(front_sq, sq),
        )
        front_value = 100 if front.piece_type == chess.KING else piece_value(front.piece_type)
        for back_sq in beyond:
            back = after.piece_at(back_sq)
            if back is None:
                continue
            if back.color == enemy and front_value > piece_value(back.piece_type) >= 3:
                return True
            break
    return False


def _is_discovered_attack(before: chess.Board, after: chess.Board, move: chess.Move) -> bool:
    mover = before.piece_at(move.from_square)
    if mover is None:
        return False
    enemy = not mover.color
    for sq in before.pieces(chess.BISHOP, mover.color) | before.pieces(chess.ROOK, mover.color) | before.pieces(chess.QUEEN, mover.color):
        if sq == move.from_square:
            continue
        gained = after.attacks(sq) & ~before.attacks(sq)
        if any(_valuable(after.piece_at(t), enemy) for t in gained):
            return True
    return False


def _is_back_rank_mate(after: chess.Board) -> bool:
    if not after.is_checkmate():
        return False
    mated = after.turn
    king_sq = after.king(mated)
    if king_sq is None:
        return False
    back_rank = 0 if mated == chess.WHITE else 7
    if chess.square_rank(king_sq) != back_rank:
        return False
    if not any(chess.square_rank(sq) == back_rank for sq in after.checkers()):
        return False
    escape_rank = 1 if mated == chess.WHITE else 6
    king_file = chess.square_file(king_sq)
    for f in range(max(0, king_file - 1), min(8, king_file + 2)):
        piece = after.piece_at(chess.square(f, escape_rank))
        if piece is not None and piece.color == mated and piece.piece_type == chess.PAWN:
            return True
    return False


def move_motifs(board: chess.Board, move: chess.Move) -> list[str]:
    """All motif tags for move played on board (board is left untouched)."""
    after = board.copy(stack=False)
    after.push(move)

    motifs: list[str] = []
    if after.is_checkmate():
        motifs.append("backRankMate" if _is_back_rank_mate(after) else "mate")
    if len(after.checkers()) >= 2:
        motifs.append("doubleCheck")
    if _is_discovered_attack(board, after, move):
        motifs.append("discoveredAttack")
    if _is_fork(after, move):
        motifs.append("fork")
    if _is_pin(after, move):
        motifs.append("pin")
    if _is_skewer(after, move):
        motifs.append("skewer")
    if move.promotion is not None:
        motifs.append("promotion")
    return motifs


def line_motifs(fen: str, line: list[str] | tuple[str, ...], max_plies: int = 4) -> list[str]:
    """Motif tags of the solver's moves in the first max_plies of line.

    Only even plies (the solver's moves) are inspected; opponent replies
    are played through. Stops quietly at the first illegal move.
    """
    board = board_from_fen(fen)
    found: list[str] = []
    for index, uci in enumerate(list(line)[:max_plies]):
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in board.legal_moves:
            break
        if index % 2 == 0:
            for tag in move_motifs(board, move):
                if tag not in found:
                    found.append(tag)
        board.push(move)
    return sorted(found, key=MOTIF_TAGS.index)


def primary_motif(fen: str, uci: str) -> str | None:
    motifs = line_motifs(fen, [uci], max_plies=1)
    return motifs[0] if motifs else None
