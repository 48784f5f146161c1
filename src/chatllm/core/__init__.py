"""Interface contracts shared by the lifecycle and inference layers."""
