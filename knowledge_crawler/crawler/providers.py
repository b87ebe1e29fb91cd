"""
Header value providers used by the fetcher for user agents and cookies.

Every provider exposes ``next() -> str``; tests swap in a
``CyclingProvider`` to get a deterministic sequence.
"""

import itertools
import random
from typing import Iterable, List, Optional, Protocol, Sequence


class ValueProvider(Protocol):
    """Anything that hands out a header value on demand."""

    def next(self) -> str:
        ...


class RandomPoolProvider:
    """Picks a value at random, with replacement, from a fixed pool."""

    def __init__(self, pool: Sequence[str], rng: Optional[random.Random] = None):
        if not pool:
            raise ValueError("Provider pool must not be empty")
        self.pool: List[str] = list(pool)
        self.rng = rng or random.Random()

    def next(self) -> str:
        return self.rng.choice(self.pool)


class CyclingProvider:
    """Returns values in order, starting over when exhausted."""

    def __init__(self, values: Iterable[str]):
        values = list(values)
        if not values:
            raise ValueError("Provider values must not be empty")
        self._cycle = itertools.cycle(values)

    def next(self) -> str:
        return next(self._cycle)


class UserAgentGenerator:
    """Builds plausible desktop browser user agents with randomised versions."""

    PLATFORMS = [
        'Windows NT 10.0; Win64; x64',
        'Macintosh; Intel Mac OS X 10_15_7',
        'X11; Linux x86_64',
    ]

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def next(self) -> str:
        platform = self.rng.choice(self.PLATFORMS)
        browser = self.rng.choice(['chrome', 'edge', 'firefox'])

        if browser == 'firefox':
            version = self.rng.randint(115, 128)
            return (f"Mozilla/5.0 ({platform}; rv:{version}.0) "
                    f"Gecko/20100101 Firefox/{version}.0")

        chrome_version = f"{self.rng.randint(110, 126)}.0.{self.rng.randint(4000, 6500)}.{self.rng.randint(0, 200)}"
        user_agent = (f"Mozilla/5.0 ({platform}) AppleWebKit/537.36 "
                      f"(KHTML, like Gecko) Chrome/{chrome_version} Safari/537.36")
        if browser == 'edge':
            user_agent += f" Edg/{chrome_version}"
        return user_agent


def build_user_agent_provider(user_agents: Sequence[str]) -> ValueProvider:
    """Use the configured pool when there is one, otherwise generate agents."""
    if user_agents:
        return RandomPoolProvider(user_agents)
    return UserAgentGenerator()
