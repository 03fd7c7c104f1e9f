"""Background worker: delayed jobs and periodic maintenance.

The worker can run as its own process (crash isolation from the API) or
inside the API's lifespan for single-box deployments:
1. Due scheduled jobs → retry clones, escalations
2. Periodic loops → event TTL sweep, loop SLA monitor, loop aggregation
"""
