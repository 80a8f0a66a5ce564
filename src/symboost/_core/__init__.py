"""Oblivious tree structure search: splits, scoring, subsets and the searcher."""
