"""
Common building blocks shared by the classifier and the job runners.

This package contains reusable, domain-agnostic code:

- configuration loading (environment variables)
- the PostgREST datastore client and the Redis REST flag-store client
- retry/backoff helpers and small text/timestamp helpers
- a small polling + threadpool daemon loop
- logging configuration
- the OpenAI-compatible chat completion mixin
"""
