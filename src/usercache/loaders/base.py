"""Adapter contract for loading directory records from an upstream source."""

from abc import ABC
from abc import abstractmethod

from usercache.models import UserLoadResult


class UserDataLoader(ABC):
    """
    Loads user records from the upstream directory.

    Implementations hold no persistent state. Pagination is handled inside each
    call; the caller always receives one aggregated result.
    """

    @abstractmethod
    async def load_all(self) -> UserLoadResult:
        """
        Load the whole current population.

        Returns:
            All users plus a continuation token for later incremental loads

        Raises:
            DataLoadError: transport, auth or upstream failure
        """

    @abstractmethod
    async def load_delta(self, delta_token: str) -> UserLoadResult:
        """
        Load only users added, updated or removed since delta_token.

        Removed users are returned with is_deleted=True.

        Raises:
            DeltaTokenExpiredError: the token is no longer accepted; a full load is needed
            DataLoadError: any other transport, auth or upstream failure
        """
