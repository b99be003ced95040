"""Rate limit aware upload relay."""
