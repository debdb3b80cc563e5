"""
Fixture User Data Loader

In-process loader serving scripted results. Used by tests and local runs
without Graph credentials.
"""

from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from loguru import logger

from usercache.errors import DeltaTokenExpiredError
from usercache.loaders.base import UserDataLoader
from usercache.models import UserLoadResult

ScriptedResult = Union[UserLoadResult, Exception]


class FixtureUserDataLoader(UserDataLoader):
    """
    Serves queued full-load results and per-token delta results.

    A scripted entry may be an exception instance, which is raised instead of
    returned. The last full-load result is reused once the queue has one entry
    left. Unknown delta tokens raise DeltaTokenExpiredError.
    """

    def __init__(
        self,
        full_results: Optional[List[ScriptedResult]] = None,
        delta_results: Optional[Dict[str, ScriptedResult]] = None,
    ):
        self.full_results: List[ScriptedResult] = list(full_results or [])
        self.delta_results: Dict[str, ScriptedResult] = dict(delta_results or {})
        self.load_all_calls = 0
        self.delta_tokens_requested: List[str] = []

    def queue_full(self, result: ScriptedResult) -> None:
        self.full_results.append(result)

    def set_delta(self, token: str, result: ScriptedResult) -> None:
        self.delta_results[token] = result

    async def load_all(self) -> UserLoadResult:
        self.load_all_calls += 1
        if not self.full_results:
            logger.debug("Fixture loader has no full result queued, returning empty population")
            return UserLoadResult()

        result = self.full_results.pop(0) if len(self.full_results) > 1 else self.full_results[0]
        return _unwrap(result)

    async def load_delta(self, delta_token: str) -> UserLoadResult:
        self.delta_tokens_requested.append(delta_token)
        if delta_token not in self.delta_results:
            raise DeltaTokenExpiredError(f"Unknown delta token: {delta_token}")
        return _unwrap(self.delta_results[delta_token])


def _unwrap(result: ScriptedResult) -> UserLoadResult:
    if isinstance(result, Exception):
        raise result
    return result.model_copy(deep=True)
