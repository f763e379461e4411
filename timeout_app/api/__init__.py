"""HTTP surface: one route per manager operation."""
