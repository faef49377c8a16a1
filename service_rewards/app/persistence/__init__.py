"""
Persistence package for the Rewards Service.

Holds the PostgreSQL policy source. Rows are versioned and never updated in
place, which keeps every historical policy version available for replay.
"""
