"""Device reachability monitoring with debounced Telegram alerts."""
