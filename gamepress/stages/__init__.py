"""Prompt construction, response parsing and quality scoring for each stage."""
