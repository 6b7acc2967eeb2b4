"""Compliance analysis and scoring pipeline for chat transcripts."""
