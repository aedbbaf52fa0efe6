"""
Exceptions for the leaderboard subsystem, each carrying a user-facing message.
"""


class LeaderboardError(Exception):
    """Base exception for leaderboard-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


class FetchError(LeaderboardError):
    """Upstream request failed: non-2xx status, timeout or network failure."""
    def __init__(self, region: str, reason: str, status_code: int = None):
        super().__init__(
            f"Fetch failed for {region}: {reason}",
            "Leaderboard source is unavailable right now."
        )
        self.region = region
        self.status_code = status_code


class ExtractionEmpty(LeaderboardError):
    """Markup was fetched but no leaderboard entries could be extracted."""
    def __init__(self, region: str):
        super().__init__(
            f"No leaderboard entries extracted for {region}; upstream markup may have changed",
            "Leaderboard data could not be read."
        )
        self.region = region


class PersistenceError(LeaderboardError):
    """Raised when a database read or write fails."""
    def __init__(self, operation: str, details: str = None):
        super().__init__(
            f"Database error during {operation}: {details}",
            "Database error occurred. Please try again later."
        )
        self.operation = operation


class ValidationError(LeaderboardError):
    """Bad input on a read or write operation; never retried."""


class DuplicatePlayerError(ValidationError):
    """Raised when a known player already exists for the identity and region."""
    def __init__(self, stable_id: str, region: str):
        super().__init__(
            f"Known player {stable_id} already exists in {region}",
            "Player already exists in the registry."
        )


class PlayerNotFoundError(LeaderboardError):
    """Raised when a known player id does not exist."""
    def __init__(self, player_id: int):
        super().__init__(f"Known player {player_id} not found", "Player not found.")
        self.player_id = player_id
