"""
Core modules for usage billing onboarding.

This package contains the typed request layer, matcher expressions,
local rating, metric wait strategies and the onboarding workflow.
"""
