"""Frame signal primitives and occlusion heuristics."""
