"""Matching pipelines: eligibility, context assembly, proposal generation, storage and triggers.

Each step takes an explicit session so the worker and the API can compose
them into short transactions.
"""
