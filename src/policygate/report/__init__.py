"""
Reporting module for PolicyGate.

Output formats:
    - Console: Rich terminal output with status icons
    - JSON: Plain dictionaries for programmatic consumption, including
      the {recentLogs, health, stats, timestamp} snapshot

Example:
    from policygate.report import print_result, build_result_dict, to_json

    print_result(result)
    print(to_json(build_result_dict(result)))
"""

from policygate.report.console import (
    print_conflicts,
    print_entries,
    print_history,
    print_result,
    print_statistics,
)
from policygate.report.json import (
    build_conflict_dict,
    build_result_dict,
    build_snapshot_dict,
    build_version_dict,
    to_json,
)

__all__ = [
    "build_conflict_dict",
    "build_result_dict",
    "build_snapshot_dict",
    "build_version_dict",
    "print_conflicts",
    "print_entries",
    "print_history",
    "print_result",
    "print_statistics",
    "to_json",
]
