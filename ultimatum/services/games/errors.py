"""Exceptions raised by the game services.

Each carries the HTTP status the API reports it with, so routes can let
them propagate to the blueprint error handler.
"""


class GameError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(GameError):
    """Rejected locally before any store call."""
    status_code = 400


class RosterError(GameError):
    status_code = 400


class NotInGame(GameError):
    status_code = 403


class NotFound(GameError):
    status_code = 404


class PreconditionFailed(GameError):
    """A conditional write matched no row: the action was already taken."""
    status_code = 409


class StoreUnavailable(GameError):
    status_code = 503


class RoundStalled(GameError):
    """The matched player did not act before the poll deadline."""
    status_code = 504

    def __init__(self, message: str, game_id: int, player_id: str, round_number: int, state: str):
        super().__init__(message)
        self.game_id = game_id
        self.player_id = player_id
        self.round_number = round_number
        self.state = state
