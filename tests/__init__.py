"""Test package for the ranked trainer core.

The tests exercise the score-to-rank-unit mapping, the run ledger, the rating
engine and the ranked session scheduler headlessly.  Time is always driven by
a ``FakeClock`` so timer and decay behaviour is deterministic.  Run them with
``pytest`` from the project root.
"""
