"""Service layer for certificate business logic.

Services encapsulate the certificate workflow, keeping entry points (the CLI,
or an HTTP layer owned elsewhere) thin. This separation provides:
- Clear business rules in one place
- Orchestration of repositories, rendering, and object storage
- Reusable logic across entry points

Layer hierarchy:
    Entry points -> Services (Business Logic) -> Repositories (Database)
                                              -> Rendering (Documents)

Services should:
- Contain all business rules and validation
- Orchestrate calls to repositories
- Return frozen schema objects, never ORM models

Services should NOT:
- Directly execute SQL queries (use repositories)
- Commit the session (the caller's session scope does)
"""
