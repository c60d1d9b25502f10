from __future__ import annotations


class ApiError(RuntimeError):
    def __init__(self, message: str, status: int, status_text: str = "", body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.status_text = status_text
        self.body = body


class InvalidRuleError(ValueError):
    pass


class DuplicateRuleError(InvalidRuleError):
    def __init__(self, url_pattern: str) -> None:
        super().__init__(f"url pattern already exists: {url_pattern}")
        self.url_pattern = url_pattern


class TabNotFoundError(LookupError):
    def __init__(self, tab_id: int) -> None:
        super().__init__(f"no tab with id {tab_id}")
        self.tab_id = tab_id
