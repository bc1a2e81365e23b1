"""Service layer for the redirect system.

Services hold the resolution rules and orchestrate the repositories,
keeping the CLI and the ASGI layer thin.

Layer hierarchy:
    CLI / Middleware -> Services -> Repositories (Database)

Offline side (the resolver pipeline):
    normalizer -> catalog_service -> resolver_service -> pipeline_service

Online side:
    redirect_service (canonicalizer + store resolver for the middleware)
    validation_service (probes a deployment against the mapping store)
    export_service (mapping snapshot and static redirect rules)

Services should NOT:
- Directly execute SQL queries (use repositories)
- Know about HTTP request/response details
"""
