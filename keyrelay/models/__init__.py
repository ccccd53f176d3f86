"""keyrelay models package.

  - responses.py — builders for the JSON error response and the CORS preflight
"""
