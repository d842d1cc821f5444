from __future__ import annotations

import itertools
import logging
from typing import Iterable, Mapping

from .config import ConfigurationError, Option, TestCase, TestCaseBuilder

LOGGER = logging.getLogger("searchbench.matrix")


class OptionMatrix:
    """Named groups of named options, expanded into their cartesian product.

    Groups are visited in sorted group-name order and options in sorted label
    order, so the produced case list and every case name are reproducible for
    identical input.
    """

    def __init__(self, groups: Mapping[str, Mapping[str, Option]]) -> None:
        self._groups = {name: dict(options) for name, options in groups.items()}

    def group_names(self) -> list[str]:
        return sorted(self._groups)

    def labels(self, group: str) -> list[str]:
        return sorted(self._groups[group])

    def __len__(self) -> int:
        if not self._groups:
            return 0
        total = 1
        for options in self._groups.values():
            total *= len(options)
        return total

    def restrict(self, group: str, labels: Iterable[str]) -> OptionMatrix:
        """Return a copy of the matrix with ``group`` narrowed to ``labels``."""

        if group not in self._groups:
            raise ConfigurationError(f"unknown matrix group {group!r}")
        wanted = list(labels)
        missing = [label for label in wanted if label not in self._groups[group]]
        if missing:
            raise ConfigurationError(
                f"unknown option(s) for group {group!r}: {', '.join(missing)}"
            )
        groups = dict(self._groups)
        groups[group] = {label: self._groups[group][label] for label in wanted}
        return OptionMatrix(groups)

    def combinations(self) -> list[list[tuple[str, str, Option]]]:
        """Return every combination as an ordered list of (group, label, option)."""

        if not self._groups:
            return []
        ordered = [
            [(group, label, self._groups[group][label]) for label in self.labels(group)]
            for group in self.group_names()
        ]
        return [list(combo) for combo in itertools.product(*ordered)]

    def expand(self) -> list[TestCase]:
        cases: list[TestCase] = []
        seen: set[str] = set()
        for combo in self.combinations():
            builder = TestCaseBuilder()
            for group, label, option in combo:
                builder.record(group, label)
                option.apply(builder)
            case = builder.build()
            if case.name in seen:
                raise ConfigurationError(f"matrix produced duplicate case name {case.name!r}")
            seen.add(case.name)
            cases.append(case)
        LOGGER.debug("Expanded %d group(s) into %d case(s)", len(self._groups), len(cases))
        return cases
