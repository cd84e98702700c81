"""Timed multiple-choice exam sessions for Discord."""
