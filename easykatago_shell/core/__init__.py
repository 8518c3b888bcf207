"""Bridge core: codec, correlator, supervisor, and facade."""
