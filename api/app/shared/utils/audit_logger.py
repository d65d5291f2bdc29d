"""
SyncAuditLogger - Logging estructurado de corridas de sincronización.

Proporciona funciones simples para registrar logs de:
- Sync diario: un archivo por día con las líneas marcadas context="sync"
- Job: un archivo por corrida con detalle completo (tablas, batches, errores)
"""
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger


class SyncAuditLogger:
    """
    Gestor de logs de auditoría de jobs de sync.

    Crea y mantiene logs separados en:
    - sync_logs/sync_<fecha>.log: resumen diario de todos los jobs
    - sync_logs/sync_<empresa>_<fecha>_<hora>_<job>.log: detalle de un job

    Uso:
        SyncAuditLogger.start_job(job_id, company_id, division_id, tables)
        SyncAuditLogger.log_table_event(job_id, "mst_ledger", "completed", {...})
        SyncAuditLogger.finish_job(job_id, summary_dict)
    """

    BASE_LOG_DIR = Path("logs")
    SYNC_LOG_DIR = BASE_LOG_DIR / "sync_logs"

    FILE_TIMESTAMP_FORMAT = "%Y-%m-%d"
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {message}"

    # job_id -> (logger bindeado, id del handler de loguru)
    _job_loggers: Dict[str, Any] = {}
    _job_handlers: Dict[str, int] = {}
    _job_files: Dict[str, Path] = {}
    _daily_handler: Optional[int] = None
    _lock = threading.Lock()

    @classmethod
    def initialize(cls) -> None:
        """
        Crea la carpeta de logs y el handler diario.
        Se llama implícitamente al iniciar el primer job.
        """
        with cls._lock:
            if cls._daily_handler is not None:
                return

            cls.SYNC_LOG_DIR.mkdir(parents=True, exist_ok=True)
            today = datetime.now().strftime(cls.FILE_TIMESTAMP_FORMAT)
            cls._daily_handler = logger.add(
                str(cls.SYNC_LOG_DIR / f"sync_{today}.log"),
                format=cls.LOG_FORMAT,
                filter=lambda record: record["extra"].get("context") == "sync",
                rotation="1 day",
                retention="30 days",
                level="DEBUG",
            )
        logger.info("SyncAuditLogger inicializado")

    @classmethod
    def start_job(
        cls,
        job_id: str,
        company_id: str,
        division_id: str,
        tables: Optional[list] = None,
    ):
        """
        Abre el log de un job y escribe el banner de inicio.

        Returns:
            Logger bindeado al job (escribe en el archivo del job)
        """
        cls.initialize()

        safe_company = str(company_id).replace(" ", "_").lower()
        date_str = datetime.now().strftime("%Y-%m-%d")
        time_str = datetime.now().strftime("%H-%M-%S")
        log_file = cls.SYNC_LOG_DIR / f"sync_{safe_company}_{date_str}_{time_str}_{job_id[:8]}.log"

        job_logger = logger.bind(job_id=job_id, context="sync")
        handler_id = logger.add(
            str(log_file),
            format=cls.LOG_FORMAT,
            filter=lambda record, jid=job_id: record["extra"].get("job_id") == jid,
            level="DEBUG",
        )

        with cls._lock:
            cls._job_loggers[job_id] = job_logger
            cls._job_handlers[job_id] = handler_id
            cls._job_files[job_id] = log_file

        job_logger.info("=" * 60)
        job_logger.info("SYNC INICIADO")
        job_logger.info(f"Job ID: {job_id}")
        job_logger.info(f"Empresa: {company_id} / División: {division_id}")
        if tables:
            job_logger.info(f"Tablas: {', '.join(tables)}")
        job_logger.info(f"Timestamp: {datetime.now().isoformat()}")
        job_logger.info("=" * 60)
        return job_logger

    @classmethod
    def log_file_for(cls, job_id: str) -> Optional[Path]:
        return cls._job_files.get(job_id)

    @classmethod
    def log_table_event(
        cls,
        job_id: str,
        table: str,
        event: str,
        details: Optional[Dict] = None,
    ) -> None:
        """Registra un evento de tabla (cambio de estado, conteos)."""
        job_logger = cls._job_loggers.get(job_id)
        if job_logger is None:
            return

        if details:
            job_logger.info(f"[{table}] {event}\n{json.dumps(details, indent=2, default=str)}")
        else:
            job_logger.info(f"[{table}] {event}")

    @classmethod
    def log_error(
        cls,
        job_id: str,
        table: str,
        error_type: str,
        message: str,
    ) -> None:
        """Registra un error de tabla/batch en el log del job (o en el diario si no hay job)."""
        job_logger = cls._job_loggers.get(job_id)
        if job_logger is None:
            logger.bind(context="sync").error(f"[{job_id[:8]}] [{table}] {error_type}: {message}")
            return
        job_logger.error(f"[{table}] {error_type}: {message}")

    @classmethod
    def finish_job(cls, job_id: str, summary: Optional[Dict] = None) -> None:
        """Escribe el banner de cierre y libera el handler del job."""
        with cls._lock:
            job_logger = cls._job_loggers.pop(job_id, None)
            handler_id = cls._job_handlers.pop(job_id, None)
            cls._job_files.pop(job_id, None)

        if job_logger is not None:
            job_logger.info("=" * 60)
            if summary is not None:
                status = "OK" if summary.get("success") else "CON ERRORES"
                job_logger.info(f"SYNC FINALIZADO ({status})")
                job_logger.info(json.dumps(
                    {k: v for k, v in summary.items() if k != "results"}, indent=2, default=str
                ))
            else:
                job_logger.warning("SYNC INTERRUMPIDO (sin resumen)")
            job_logger.info(f"Timestamp: {datetime.now().isoformat()}")
            job_logger.info("=" * 60)

        if handler_id is not None:
            logger.remove(handler_id)
