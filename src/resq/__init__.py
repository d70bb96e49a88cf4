"""ResQ emergency dispatch coordination."""
