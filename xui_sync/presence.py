from typing import Iterable, List, Protocol


class Presence(Protocol):
    def set_online_clients(self, emails: Iterable[str]) -> None: ...

    def get_online_clients(self) -> List[str]: ...


class OnlineClients:
    """Emails that produced traffic during the last accounting tick."""

    def __init__(self) -> None:
        self._emails: List[str] = []

    def set_online_clients(self, emails: Iterable[str]) -> None:
        # replaced wholesale, never merged
        self._emails = list(dict.fromkeys(emails))

    def get_online_clients(self) -> List[str]:
        return list(self._emails)
