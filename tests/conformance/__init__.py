"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the custody contracts.

The tests are organized by invariant:
1. conservation.py - Recorded totals reconcile with held balances; claims never exceed holdings
2. atomicity.py - Entry points are all-or-nothing and non-reentrant
3. temporal.py - Unlock times gate withdrawals exactly

These tests use hypothesis for property-based testing.
"""
