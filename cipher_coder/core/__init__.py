"""
Core modules for Cipher Coder.

This package contains inference orchestration: error classification,
retry, admission control, conversation state, dispatch, and response
post-processing.
"""
