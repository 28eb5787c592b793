"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the protection pool.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Premium, allocation and tier account conservation
2. atomicity.py - All-or-nothing update semantics
3. idempotency.py - Duplicate application handling
4. determinism.py - Reproducible state and identifiers
5. temporal.py - Deadlines and pool time only move one way

These tests use hypothesis for property-based testing.
"""
