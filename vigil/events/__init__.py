"""Events: the generic transport shape, its typed variants, and the feeds that deliver them."""
