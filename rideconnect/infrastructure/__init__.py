"""RideConnect infrastructure - GPS sampling and ride persistence."""
