"""Unit tests for the awards voting client.

Pure logic only: results aggregation, percentages, vote count labels,
local storage and request validation. No transport is involved.
"""
