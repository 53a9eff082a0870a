"""
advisory — Generative guidance text attached to alerts on demand.

Sub-modules:
    gemini — prompt template, Gemini REST call, fallback text
"""
