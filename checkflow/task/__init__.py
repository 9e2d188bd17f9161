"""Workflows and Luigi driver tasks of checkflow.

This module contains the mapping, calling and import workflows, the tracking
store they record into, and the Luigi tasks that run one pass of each.
"""
