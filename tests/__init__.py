"""
CDFi Subscription Test Suite

Tests for:
- The ledger substrate
- Oracle pricing and payment rails
- Treasury and vesting
- HTTP API and live chain readers
"""
