"""ResQ dispatch server and its tool functions."""
