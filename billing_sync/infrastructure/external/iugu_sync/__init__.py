"""
Pipeline de sincronización one-way: Iugu -> PostgreSQL.

Este paquete está diseñado para ejecutarse como job (cron / task scheduler).

Objetivos de diseño:
- Idempotencia: se puede ejecutar N veces sin duplicar datos.
- Incremental: watermark persistido en un checkpoint JSON, reanudable.
- Integridad referencial: nunca se inserta un hijo sin su padre (placeholders).
- Control total: mapeo/transformaciones/resolución de conflictos en código.
"""
