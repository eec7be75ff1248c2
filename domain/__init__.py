"""Describes the recipe collection domain. Centres around the document store.

Recipes and their ingredient items are documents in one partitioned
collection, told apart by their `type`. The store either talks to Cosmos DB
or keeps everything in memory, and both understand the same small query
language so the rest of the code does not care which one it got.

Failures come back as `StoreError`s with a kind. Transient faults and rate
limiting are retried a bounded number of times before anyone sees them.
"""
