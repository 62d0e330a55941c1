"""
llm — Remote reasoning boundary.

Builds guardian prompts, calls the Gemini model with timeout/retry, and
holds the canned fallback replies used when the remote call wholly fails.
"""
