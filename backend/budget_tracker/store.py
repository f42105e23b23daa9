from datetime import datetime, timezone
from uuid import UUID, uuid4


class InMemoryStore:
    def __init__(self) -> None:
        self.user_settings: dict[str, dict] = {}
        # keyed by (user_id, name, type)
        self.categories: dict[tuple[str, str, str], dict] = {}
        self.transactions: dict[UUID, dict] = {}
        # keyed by (user_id, day, month, year)
        self.month_history: dict[tuple[str, int, int, int], dict] = {}
        # keyed by (user_id, month, year)
        self.year_history: dict[tuple[str, int, int], dict] = {}

    @staticmethod
    def make_id() -> UUID:
        return uuid4()

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


store = InMemoryStore()
