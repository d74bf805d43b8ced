"""Runnable demonstrations of multi-layer ICP registration.

Examples:
    - example_layered_registration.py: two-layer cloud plus planes, known
      rigid transform, Horn vs. Gauss-Newton solvers
"""
