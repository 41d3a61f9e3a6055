"""
Conformance Test Suite

Properties every term pool must keep, whatever sequence of calls it sees:
1. conservation.py - Engine books match the ledger, value is neither created nor lost
2. atomicity.py - A failed or re-entered call leaves no trace
3. round_trip.py - Depositing then withdrawing never pays out more than went in

These tests use hypothesis for property-based testing.
"""
