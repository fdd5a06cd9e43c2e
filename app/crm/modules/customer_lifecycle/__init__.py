"""
Customer ownership & lifecycle.

A customer is either Owned (a responsible sales rep, optionally an agent linked to
that rep) or Pooled (no sales rep; anyone eligible may claim it). Progress moves
independently through the sales funnel. Every ownership or progress change appends
exactly one immutable history row in the same transaction as the change.
"""
