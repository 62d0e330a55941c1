"""
safety — Response validation.

Every model answer passes the strict schema gate before it may influence the
system state; a single violation rejects the whole result.
"""
