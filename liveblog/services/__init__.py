"""Services: structured summarisation and the simulation pipeline."""
