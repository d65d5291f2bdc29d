"""
Pipeline de sincronización one-way: sistema contable remoto -> PostgreSQL multi-tenant.

Este paquete está diseñado para ejecutarse como job (cron / CLI / endpoint en thread),
no como parte de un request/response síncrono del API.

Etapas (por tabla, estrictamente secuenciales):
- query_builder: TableSchema -> request XML de reporte
- transport_client: POST del request, retorna bytes crudos
- response_normalizer: payload aplanado -> filas posicionales
- record_decoder: fila posicional -> registro tipado
- batch_importer: chunks + upsert idempotente + reintentos

Objetivos de diseño:
- Esquema declarativo (datasets.yaml): agregar un dataset no requiere código nuevo.
- Idempotencia: UPSERT por (guid, company_id, division_id).
- Aislamiento de fallos: registro -> batch -> tabla -> job.
"""
