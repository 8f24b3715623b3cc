"""Engine implementations that execute one job and report a normalized outcome."""
