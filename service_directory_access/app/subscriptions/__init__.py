"""
Subscription package: fans store change notifications out to live
subscribers as full, ordered record snapshots.
"""
