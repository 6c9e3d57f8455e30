"""File-backed conversation and trace storage."""
