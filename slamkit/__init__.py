"""Geometric solvers and helpers for visual SLAM: EPnP, RANSAC PnP, Sim3, filtering, trajectories, viewer control."""

__version__ = "0.1.0"

__all__ = ["epnp", "sgfilter", "pnp_ransac", "sim3", "trajectory", "viewer_control"]