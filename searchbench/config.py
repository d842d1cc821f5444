from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

# repo pattern => result set size => structural match pattern
MATCH_PATTERNS: dict[str, dict[str, str]] = {
    r"github\.com/sourcegraph/sourcegraph-typescript$": {
        "small": "ProgressProvider = (:[1])",  # 2 results
        "medium": "const :[1] =",  # 213 results
        "large": "(:[1])",  # 407 results
    },
    r"torvalds/linux$": {
        "small": "balloon_page_enqueue_one(:[1])",  # 3 results
        "medium": "#include <crypto/internal/:[1]> ",  # 196 results
        "large": "notify(:[1])",  # 470 results
    },
    r"^(github.com/)?chromium/chromium$": {
        "small": "izip(:[1])",  # 14 results
        "medium": "DCHECK_LT(index, :[1])",  # 151 results
        "large": "base::size(:[1])",  # 703 results
    },
}

RESULT_SET_SIZES: tuple[str, ...] = ("small", "medium", "large")
NEW_CODEPATH_RULE = "rule:'where \"zoekt\" == \"zoekt\"'"
DEFAULT_PROFILE_MARGIN_SECONDS = 5.0


class ConfigurationError(Exception):
    """Raised when the experiment matrix cannot be turned into runnable cases."""


def lookup_match_pattern(repo: str, result_set_size: str) -> str | None:
    return MATCH_PATTERNS.get(repo, {}).get(result_set_size)


@dataclass(frozen=True)
class Endpoints:
    frontend: str = ""
    frontend_debug: str = ""
    searcher_debug: str = ""
    token: str = field(default="", repr=False)

    def debug_endpoints(self) -> dict[str, str]:
        """Return the configured debug endpoints keyed by service name."""

        services = {"frontend": self.frontend_debug, "searcher": self.searcher_debug}
        return {service: address for service, address in services.items() if address}


@dataclass(frozen=True)
class TriggerSpec:
    interval: float
    count: int
    label: str = ""

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigurationError(f"trigger interval must be > 0, got {self.interval}")
        if self.count < 1:
            raise ConfigurationError(f"trigger count must be >= 1, got {self.count}")

    def profile_window(self, margin: float = DEFAULT_PROFILE_MARGIN_SECONDS) -> float:
        return self.count * self.interval + margin


@dataclass(frozen=True)
class TestCase:
    """One fully resolved combination of matrix options."""

    __test__ = False

    name: str
    endpoints: Endpoints
    use_new_codepath: bool
    repo: str
    result_set_size: str
    count: int
    trigger: TriggerSpec
    match_pattern: str
    build_options: Mapping[str, str]

    def query(self) -> str:
        parts = [
            "timeout:10m",
            f"count:{self.count}",
            "patternType:structural",
            f"repo:{self.repo}",
        ]
        if self.use_new_codepath:
            parts.append(NEW_CODEPATH_RULE)
        parts.append(self.match_pattern)
        return " ".join(parts)

    def profile_window(self, margin: float = DEFAULT_PROFILE_MARGIN_SECONDS) -> float:
        return self.trigger.profile_window(margin)


@dataclass
class TestCaseBuilder:
    """Mutable accumulator the matrix options are applied to."""

    __test__ = False

    labels: list[str] = field(default_factory=list)
    build_options: dict[str, str] = field(default_factory=dict)
    endpoints: Endpoints = field(default_factory=Endpoints)
    use_new_codepath: bool = False
    repo: str = ""
    result_set_size: str = ""
    count: int = 0
    trigger: TriggerSpec | None = None

    def record(self, group: str, label: str) -> None:
        self.build_options[group] = label
        self.labels.append(label)

    def build(self) -> TestCase:
        if self.trigger is None:
            raise ConfigurationError(f"case {self.name()!r} has no query trigger")
        match_pattern = lookup_match_pattern(self.repo, self.result_set_size)
        if match_pattern is None:
            raise ConfigurationError(
                f"case {self.name()!r}: no match pattern for repo {self.repo!r} "
                f"and result set size {self.result_set_size!r}"
            )
        return TestCase(
            name=self.name(),
            endpoints=self.endpoints,
            use_new_codepath=self.use_new_codepath,
            repo=self.repo,
            result_set_size=self.result_set_size,
            count=self.count,
            trigger=self.trigger,
            match_pattern=match_pattern,
            build_options=dict(self.build_options),
        )

    def name(self) -> str:
        return "_".join(self.labels)


class Option:
    """A named transformation applied to a :class:`TestCaseBuilder`."""

    def apply(self, builder: TestCaseBuilder) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class EndpointOption(Option):
    frontend: str
    frontend_debug: str
    searcher_debug: str
    token_env: str
    environ: Mapping[str, str] = field(default_factory=lambda: os.environ, repr=False, compare=False)
    token: str = field(init=False, repr=False, default="")

    def __post_init__(self) -> None:
        token = self.environ.get(self.token_env, "")
        if not token:
            raise ConfigurationError(f"environment variable {self.token_env} does not contain a token")
        object.__setattr__(self, "token", token)

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.endpoints = Endpoints(
            frontend=self.frontend,
            frontend_debug=self.frontend_debug,
            searcher_debug=self.searcher_debug,
            token=self.token,
        )


@dataclass(frozen=True)
class CodePathOption(Option):
    use_new_codepath: bool

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.use_new_codepath = self.use_new_codepath


@dataclass(frozen=True)
class RepoOption(Option):
    repo: str

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.repo = self.repo


@dataclass(frozen=True)
class ResultSetSizeOption(Option):
    size: str

    def __post_init__(self) -> None:
        if self.size not in RESULT_SET_SIZES:
            raise ConfigurationError(f"unknown result set size {self.size!r}")

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.result_set_size = self.size


@dataclass(frozen=True)
class CountOption(Option):
    count: int

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.count = self.count


@dataclass(frozen=True)
class QueryTriggerOption(Option):
    interval: float
    count: int

    def apply(self, builder: TestCaseBuilder) -> None:
        builder.trigger = TriggerSpec(
            interval=self.interval,
            count=self.count,
            label=f"{self.count}x{self.interval:g}s",
        )


def default_option_groups(
    environ: Mapping[str, str] | None = None,
    endpoints: tuple[str, ...] = ("local", "cloud"),
) -> dict[str, dict[str, Option]]:
    """Return the stock experiment matrix as named option groups.

    Endpoint options resolve their access tokens eagerly, so only the
    endpoints listed in ``endpoints`` need a token in the environment.
    """

    env = os.environ if environ is None else environ
    endpoint_factories = {
        "local": lambda: EndpointOption(
            "http://127.0.0.1:3080", "127.0.0.1:6063", "127.0.0.1:6069", "LOCAL_TOKEN", env
        ),
        "cloud": lambda: EndpointOption("https://sourcegraph.com", "", "", "CLOUD_TOKEN", env),
    }
    unknown = sorted(set(endpoints) - set(endpoint_factories))
    if unknown:
        raise ConfigurationError(f"unknown endpoints: {', '.join(unknown)}")

    return {
        "endpoints": {label: endpoint_factories[label]() for label in endpoints},
        "codePath": {
            "new": CodePathOption(True),
            "old": CodePathOption(False),
        },
        "repo": {
            "sgtest": RepoOption(r"github\.com/sourcegraph/sourcegraph-typescript$"),
            "linux": RepoOption(r"torvalds/linux$"),
            "chromium": RepoOption(r"^(github.com/)?chromium/chromium$"),
        },
        "resultSetSize": {
            "sm": ResultSetSizeOption("small"),
            "md": ResultSetSizeOption("medium"),
            "lg": ResultSetSizeOption("large"),
        },
        "count": {
            "10": CountOption(10),
            "10000": CountOption(10000),
        },
        "queryTrigger": {
            "2x5s": QueryTriggerOption(5.0, 2),
            "20x05s": QueryTriggerOption(0.5, 20),
        },
    }
