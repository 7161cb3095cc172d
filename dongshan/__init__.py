"""dongshan: a terminal coding assistant with policy-gated shell execution."""
