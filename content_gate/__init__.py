"""Content gate: validates a published content workspace before promotion.

Loads the catalog/index/entry graph, checks schema contracts, referential
integrity and pagination, recomputes analytics, detects duplicates, and
folds every finding into one pass/fail report.
"""
