"""Notify Router Test Suite

Test organization:
- unit/: Unit tests for individual modules
  - scheduling/: Time resolver and recurrence rules (pure)
  - queue/: Queue item store, broadcast store, direct enqueue
  - broadcast/: Fan-out expansion and cancellation
  - delivery/: Processor gates, outcomes and the Expo transport
- integration/: Full cycles against a temporary database

Running tests:
    # All tests
    pytest

    # Specific module
    pytest tests/unit/delivery/
"""
