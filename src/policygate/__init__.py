"""
PolicyGate - Policy decisions for autonomous agent tasks.

PolicyGate decides whether a proposed agent task may proceed. It provides:
- Priority-ordered allow/deny rules with deny-overrides combination
- A closed boolean condition language over request attributes
- Static conflict diagnostics for rule sets
- An audit trail with running statistics and live notifications

Example usage:
    $ policygate evaluate policies/ request.yaml
    $ policygate check policies/
    $ policygate logs --db audit.db
"""

__version__ = "0.1.0"
__author__ = "PolicyGate Contributors"

__all__ = [
    "__version__",
    "__author__",
]
