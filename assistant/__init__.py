"""Personal-assistant agent core."""
