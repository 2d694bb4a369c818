"""Markdown prompt templates and their loader."""
