"""resgraph planner: compiles resource declarations into ordered apply batches."""
