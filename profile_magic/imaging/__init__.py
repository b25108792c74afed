"""Image editing: the generative model adapter and the generation pipeline."""
