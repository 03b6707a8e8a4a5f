"""Client for the equipment rental marketplace."""
