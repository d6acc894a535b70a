"""ratelimit/ -- Moving-window admission control on the limits library (Redis, in-memory, allow-all).

Layer rule: ratelimit/ imports stdlib, third-party libraries and core/ only.
"""
