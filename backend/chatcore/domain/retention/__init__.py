"""Message retention periods, expiry maths and deletion timers."""
