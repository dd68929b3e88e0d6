"""Agent invocation pipeline with a classified run ledger.

Every invocation of an LLM-backed agent is written to ``agent_runs`` as a
RUNNING row before anything else happens, then finalized exactly once with an
outcome from a closed taxonomy. Between those two writes the invocation passes
through, in order:

- the content-hash result cache (single-flight claim or published hit),
- the pre-call gate (input size threshold, deterministic skip),
- the per (agent type, queue) circuit breaker,
- the bounded retry loop around the model call,
- output validation and the ordered outcome classifier.

Expected failures are outcomes, not exceptions, so waste is queryable: tokens
spent on empty, unparseable, rejected or low-confidence output show up in
``agent-runs runs stats`` next to the runs that applied something.
"""
