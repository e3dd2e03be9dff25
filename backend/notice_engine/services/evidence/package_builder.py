"""
Evidence Package Builder

Assembles a court-ready ZIP archive for one notice:

    00_CADENA_CUSTODIA.json      manifest (compatibility contract, see below)
    01_sancion/                  notice content, integrity tokens, PDF
    02_testigos/                 signed witness declarations
    03_evidencias/               listing + archivos/ (original files)
    04_descargo/                 employee rebuttal
    05_bitacora/novedades.json   prior incidents of the employee
    06_timeline/                 timeline.json, timeline.html
    07_verificacion/             hashes.json, INSTRUCCIONES.md
    README.md                    case summary

The builder never mutates the notice or its children. Artifacts that
cannot be fetched from the blob store are listed in the manifest under
missing_artifacts; the export still succeeds. The SHA-256 of the whole
archive is returned to the caller and stored on the export record; it
cannot live inside the archive it seals.
"""
import html
import io
import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import PUBLIC_BASE_URL
from ...errors import ExternalProviderUnavailable, PartialExportFailure
from ...models.db_models import ActorType, ExportRecordDB, ExportScope, NoticeDB
from ..audit.audit_log import AuditLog
from ..descargo.descargo_service import DescargoService
from ..integrity.hashing import HASH_ALGORITHM, sha256_hex, verify_notice_digest
from ..storage.blob_store import BlobNotFound, BlobStore
from .evidence_service import EvidenceService
from .incident_log import IncidentLog
from .timeline import TimelineEvent, collect
from .witness_service import WitnessService

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"
MANIFEST_PATH = "00_CADENA_CUSTODIA.json"
HASHES_PATH = "07_verificacion/hashes.json"

# Sections written for each scope
SCOPE_SECTIONS = {
    ExportScope.FULL: {
        "sancion", "sancion_pdf", "testigos", "evidencias", "evidencias_archivos",
        "descargo", "bitacora", "timeline", "verificacion",
    },
    ExportScope.TECHNICAL: {
        "sancion", "sancion_pdf", "evidencias", "evidencias_archivos", "timeline", "verificacion",
    },
    ExportScope.CHAIN_OF_CUSTODY: {"timeline", "verificacion"},
    ExportScope.TIMELINE_ONLY: {"timeline"},
}

STATUTES = [
    "Ley de Contrato de Trabajo 20.744, art. 67 (facultades disciplinarias)",
    "Ley de Contrato de Trabajo 20.744, art. 218 (suspension, requisitos de validez)",
    "Ley 27.555, art. 8 (notificaciones electronicas)",
    "Ley 25.506 (firma digital y documento electronico)",
]

INSTRUCTIONS_TEMPLATE = """# INSTRUCCIONES DE VERIFICACION DE INTEGRIDAD

Este paquete contiene documentos digitales con huellas {algorithm}.
Para verificar que ningun archivo fue alterado:

1. Calcular el hash {algorithm} de cada archivo.
2. Compararlo con el valor de la seccion `files` de `07_verificacion/hashes.json`,
   indexada por la ruta del archivo dentro del paquete.

### Linux / macOS

```bash
sha256sum 01_sancion/sancion.json
```

### Windows (PowerShell)

```powershell
Get-FileHash 01_sancion\\sancion.json -Algorithm SHA256
```

## Huellas registradas

La seccion `recorded_digests` de `hashes.json` contiene las huellas
calculadas en el momento de cada hecho (creacion de la notificacion,
confirmacion de lectura, firma de testigos, carga de evidencias, descargo).
No son hashes de archivos del paquete: se verifican en linea (ver abajo).

## Hash del paquete completo

El hash {algorithm} del archivo ZIP se entrega por separado, en el
encabezado `X-Package-SHA256` de la descarga y en el registro de
exportacion. Calcule el hash del ZIP recibido y comparelo con ese valor.

## Verificacion en linea

Cualquier hash de este paquete puede consultarse en {verify_url}

---
Generado: {generated_at}
Notificacion: {notice_id}
"""

README_TEMPLATE = """# PAQUETE DE EVIDENCIA

## Informacion del caso

- **Empleador**: {employer} (CUIT: {employer_tax_id})
- **Empleado**: {employee} (CUIL: {employee_tax_id})
- **Medida**: {category}
- **Fecha del hecho**: {incident_date}
- **Estado**: {state}
- **Hash del documento**: `{content_hash}`
- **Sello de tiempo**: {tsa_status}
- **Anclaje blockchain**: {anchor_status}

## Normativa invocada

{statutes}

## Contenido ({scope})

{contents}

## Verificacion

Ver `07_verificacion/INSTRUCCIONES.md`.
{missing}
---
Generado: {generated_at}
"""


@dataclass
class ExportResult:
    record: ExportRecordDB
    archive: bytes
    package_hash: str
    manifest: Dict[str, Any]
    filename: str


def _json_bytes(payload: Any) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str).encode("utf-8")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class PackageBuilder:
    """Read-only assembler of evidence packages."""

    def __init__(self, db_session: Session, blob_store: Optional[BlobStore] = None):
        self.db = db_session
        self.blob_store = blob_store
        self.audit = AuditLog(db_session)

    def build(
        self,
        notice: NoticeDB,
        scope: ExportScope = ExportScope.FULL,
        requested_by: Optional[str] = None,
        requested_for: Optional[str] = None,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExportResult:
        now = now or datetime.utcnow()
        sections = SCOPE_SECTIONS[scope]
        files: Dict[str, bytes] = {}
        missing: List[PartialExportFailure] = []

        events = collect(self.db, notice)
        witnesses = WitnessService(self.db).for_notice(notice.id)
        evidence = EvidenceService(self.db).for_notice(notice.id)
        incidents = IncidentLog(self.db).recent_for_employee(notice.employee_id)
        descargo_summary = (
            DescargoService(self.db).summary(notice.descargo, include_annotations=True)
            if notice.descargo else None
        )
        notice_hash_valid = verify_notice_digest(notice)
        if not notice_hash_valid:
            logger.error(f"Notice {notice.id} content no longer matches its hash at export time")

        # 01_sancion
        if "sancion" in sections:
            files["01_sancion/sancion.json"] = _json_bytes(self._notice_document(notice))
            files["01_sancion/integridad.json"] = _json_bytes(self._integrity_tokens(notice))
            if notice.read_confirmation_hash:
                files["01_sancion/confirmacion_lectura.json"] = _json_bytes({
                    "read_confirmed_at": _iso(notice.read_confirmed_at),
                    "read_ip": notice.read_ip,
                    "read_user_agent": notice.read_user_agent,
                    "read_confirmation_hash": notice.read_confirmation_hash,
                })
        if "sancion_pdf" in sections:
            if notice.document_key:
                self._fetch(files, missing, "01_sancion/sancion.pdf", notice.document_key)
            if notice.physical_notice_receipt_key:
                self._fetch(files, missing, "01_sancion/acuse_fisico", notice.physical_notice_receipt_key)

        # 02_testigos
        if "testigos" in sections:
            for witness in witnesses:
                files[f"02_testigos/testigo_{witness.id}.json"] = _json_bytes(WitnessService.summary(witness))

        # 03_evidencias
        if "evidencias" in sections:
            files["03_evidencias/evidencias.json"] = _json_bytes([EvidenceService.summary(e) for e in evidence])
        evidence_alerts = []
        if "evidencias_archivos" in sections:
            for item in evidence:
                path = f"03_evidencias/archivos/{item.id}_{item.filename}"
                data = self._fetch(files, missing, path, item.storage_key)
                if data is not None and sha256_hex(data) != item.content_hash:
                    logger.error(f"Evidence {item.id} bytes differ from recorded hash at export time")
                    evidence_alerts.append({"evidence_id": item.id, "path": path})

        # 04_descargo
        if "descargo" in sections and descargo_summary:
            files["04_descargo/descargo.json"] = _json_bytes(descargo_summary)

        # 05_bitacora
        if "bitacora" in sections:
            files["05_bitacora/novedades.json"] = _json_bytes([IncidentLog.summary(i) for i in incidents])

        # 06_timeline
        if "timeline" in sections:
            files["06_timeline/timeline.json"] = _json_bytes([e.to_dict() for e in events])
            files["06_timeline/timeline.html"] = self._timeline_html(notice, events).encode("utf-8")

        if "verificacion" in sections:
            files["07_verificacion/INSTRUCCIONES.md"] = INSTRUCTIONS_TEMPLATE.format(
                algorithm=HASH_ALGORITHM,
                verify_url=f"{PUBLIC_BASE_URL}/verificar",
                generated_at=now.isoformat(),
                notice_id=notice.id,
            ).encode("utf-8")

        listed = set(files) | {"README.md", MANIFEST_PATH}
        if "verificacion" in sections:
            listed.add(HASHES_PATH)
        files["README.md"] = self._readme(notice, scope, listed, missing, now).encode("utf-8")

        # sha256 of the exact bytes written at each path
        file_hashes = {path: sha256_hex(data) for path, data in sorted(files.items())}
        recorded_digests = self._recorded_digests(notice, events)
        if "verificacion" in sections:
            files[HASHES_PATH] = _json_bytes({
                "algorithm": HASH_ALGORITHM,
                "files": file_hashes,
                "recorded_digests": recorded_digests,
            })

        manifest = {
            "version": MANIFEST_VERSION,
            "generated_at": now.isoformat(),
            "package": {
                "scope": scope.value,
                "requested_by": requested_by,
                "requested_for": requested_for,
                "reason": reason,
            },
            "parties": self._parties(notice),
            "notice": {
                "id": notice.id,
                "category": notice.category.value,
                "state": notice.state.value,
                "created_at": _iso(notice.created_at),
                "sent_at": _iso(notice.sent_at),
                "due_date": _iso(notice.due_date),
                "content_hash": notice.content_hash,
            },
            "legal_basis": STATUTES,
            "integrity": {
                "algorithm": HASH_ALGORITHM,
                "notice_hash": notice.content_hash,
                "notice_hash_valid": notice_hash_valid,
                "evidence_alerts": evidence_alerts,
                "timestamp_authority": notice.tsa_status.value,
                "notary_anchor": notice.anchor_status.value,
            },
            "chain_of_custody": {"events": [e.to_manifest() for e in events]},
            "witnesses": [WitnessService.summary(w) for w in witnesses],
            "evidence": [EvidenceService.summary(e) for e in evidence],
            "rebuttal": descargo_summary,
            "prior_incidents": [IncidentLog.summary(i) for i in incidents],
            "recorded_digests": recorded_digests,
            "file_hashes": file_hashes,
            "missing_artifacts": [m.to_dict() for m in missing],
        }
        files[MANIFEST_PATH] = _json_bytes(manifest)

        archive = self._zip(files)
        package_hash = sha256_hex(archive)
        export_id = str(uuid4())
        filename = f"evidencia_{notice.category.value}_{notice.id[:8]}_{now.strftime('%Y%m%d')}.zip"

        storage_key = None
        if self.blob_store is not None:
            try:
                storage_key = self.blob_store.put(
                    f"notices/{notice.id}/exportaciones/{export_id}.zip", archive, content_type="application/zip"
                )
            except ExternalProviderUnavailable as e:
                logger.warning(f"Export {export_id} archive not stored: {e.message}")

        record = ExportRecordDB(
            id=export_id,
            notice_id=notice.id,
            scope=scope,
            requested_by=requested_by,
            requested_for=requested_for,
            reason=reason,
            package_hash=package_hash,
            size_bytes=len(archive),
            storage_key=storage_key,
            contents=sorted(files.keys()),
            missing_artifacts=manifest["missing_artifacts"],
            manifest=manifest,
            created_at=now,
        )
        self.db.add(record)
        self.audit.record(
            event_type="export_generated",
            description=f"Evidence package ({scope.value}) generated",
            actor=ActorType.EMPLOYER,
            notice_id=notice.id,
            subject_type="export",
            subject_id=export_id,
            ip_address=ip_address,
            content_hash=package_hash,
            metadata={
                "scope": scope.value,
                "requested_for": requested_for,
                "size_bytes": len(archive),
                "missing_artifacts": len(missing),
            },
            occurred_at=now,
        )
        self.db.commit()
        logger.info(f"Export {export_id} for notice {notice.id}: {len(files)} files, {len(missing)} missing")
        return ExportResult(
            record=record, archive=archive, package_hash=package_hash, manifest=manifest, filename=filename
        )

    # =========================================================================
    # SECTIONS
    # =========================================================================

    def _fetch(
        self,
        files: Dict[str, bytes],
        missing: List[PartialExportFailure],
        path: str,
        storage_key: str,
    ) -> Optional[bytes]:
        """Copy one blob into the archive; failures are recorded, not raised."""
        if self.blob_store is None:
            missing.append(PartialExportFailure(path, "no blob store configured"))
            return None
        try:
            data = self.blob_store.get(storage_key)
        except BlobNotFound:
            missing.append(PartialExportFailure(path, "not found in storage"))
            return None
        except ExternalProviderUnavailable as e:
            missing.append(PartialExportFailure(path, e.message))
            return None
        files[path] = data
        return data

    def _parties(self, notice: NoticeDB) -> Dict[str, Any]:
        employer = notice.employer
        employee = notice.employee
        return {
            "employer": {
                "id": employer.id,
                "legal_name": employer.legal_name,
                "tax_id": employer.tax_id,
            },
            "employee": {
                "id": employee.id,
                "full_name": employee.full_name,
                "tax_id": employee.tax_id,
                "employee_number": employee.employee_number,
            },
        }

    def _notice_document(self, notice: NoticeDB) -> Dict[str, Any]:
        return {
            "id": notice.id,
            "category": notice.category.value,
            "severity": notice.severity.value,
            "reason": notice.reason,
            "facts": notice.facts,
            "incident_date": notice.incident_date.isoformat() if notice.incident_date else None,
            "incident_time": notice.incident_time,
            "incident_place": notice.incident_place,
            "suspension_days": notice.suspension_days,
            "suspension_start": notice.suspension_start.isoformat() if notice.suspension_start else None,
            "suspension_end": notice.suspension_end.isoformat() if notice.suspension_end else None,
            "generated_at": _iso(notice.generated_at),
            "origin_ip": notice.origin_ip,
            "content_hash": notice.content_hash,
            "state": notice.state.value,
            "sent_at": _iso(notice.sent_at),
            "due_date": _iso(notice.due_date),
            "read_confirmed_at": _iso(notice.read_confirmed_at),
            "disputed_at": _iso(notice.disputed_at),
            "dispute_reason": notice.dispute_reason,
            "firm_at": _iso(notice.firm_at),
            "physical_notice_sent_at": _iso(notice.physical_notice_sent_at),
            "physical_notice_method": notice.physical_notice_method,
        }

    def _integrity_tokens(self, notice: NoticeDB) -> Dict[str, Any]:
        return {
            "algorithm": HASH_ALGORITHM,
            "content_hash": notice.content_hash,
            "timestamp_authority": {
                "status": notice.tsa_status.value,
                "authority": notice.tsa_authority,
                "token": notice.tsa_token,
                "stamped_at": _iso(notice.tsa_stamped_at),
            },
            "notary_anchor": {
                "status": notice.anchor_status.value,
                "calendar": notice.anchor_calendar,
                "receipt": notice.anchor_receipt,
                "submitted_at": _iso(notice.anchor_submitted_at),
                "confirmed_at": _iso(notice.anchor_confirmed_at),
                "block_height": notice.anchor_block_height,
            },
        }

    def _recorded_digests(self, notice: NoticeDB, events: List[TimelineEvent]) -> Dict[str, str]:
        """
        Digests recorded at the time of each fact, keyed by what they seal.

        These are not file hashes: the notice digest covers canonical
        content plus provenance, signatures cover the signed statement.
        File hashes live under "files" in hashes.json.
        """
        digests = {}
        for event in events:
            if not event.digest:
                continue
            if event.event_type == "notice_created":
                key = "notice.content_hash"
            elif event.event_type == "read_confirmed":
                key = "notice.read_confirmation_hash"
            elif event.event_type == "witness_signed":
                key = f"witness.{event.subject_id}.signature_hash"
            elif event.event_type == "evidence_uploaded":
                key = f"evidence.{event.subject_id}.content_hash"
            elif event.event_type == "descargo_exercised":
                key = "descargo.confirmation_hash"
            elif event.event_type == "physical_notice_sent":
                key = "physical_notice.receipt_hash"
            else:
                continue
            digests[key] = event.digest
        digests.setdefault("notice.content_hash", notice.content_hash)
        return digests

    def _timeline_html(self, notice: NoticeDB, events: List[TimelineEvent]) -> str:
        rows = "\n".join(
            f'<div class="evento"><span class="fecha">{e.fecha.strftime("%d/%m/%Y %H:%M:%S")} UTC</span>'
            f' <span class="tipo">{html.escape(e.tipo)}</span>'
            f' <span class="titulo">{html.escape(e.titulo)}</span>'
            + (f' <code>{e.digest}</code>' if e.digest else "")
            + "</div>"
            for e in events
        )
        return (
            "<!DOCTYPE html>\n<html lang=\"es\"><head><meta charset=\"utf-8\">"
            f"<title>Timeline {notice.id}</title>"
            "<style>body{font-family:sans-serif}.evento{border-left:3px solid #2563eb;"
            "margin:8px 0;padding:4px 12px}.fecha{color:#64748b;font-size:12px}"
            "code{font-size:11px;color:#475569}</style></head><body>"
            f"<h1>{html.escape(notice.employee.full_name)}: {notice.category.value}</h1>"
            f"<p>Hash: <code>{notice.content_hash}</code></p>\n{rows}\n</body></html>"
        )

    def _readme(self, notice: NoticeDB, scope: ExportScope, files, missing, now: datetime) -> str:
        missing_text = ""
        if missing:
            missing_text = "\n## Archivos no incluidos\n\n" + "\n".join(
                f"- `{m.artifact_path}`: {m.reason}" for m in missing
            ) + "\n"
        return README_TEMPLATE.format(
            employer=notice.employer.legal_name,
            employer_tax_id=notice.employer.tax_id or "N/A",
            employee=notice.employee.full_name,
            employee_tax_id=notice.employee.tax_id or "N/A",
            category=notice.category.value,
            incident_date=notice.incident_date.isoformat() if notice.incident_date else "N/A",
            state=notice.state.value,
            content_hash=notice.content_hash,
            tsa_status=notice.tsa_status.value,
            anchor_status=notice.anchor_status.value,
            statutes="\n".join(f"- {s}" for s in STATUTES),
            scope=scope.value,
            contents="\n".join(f"- `{p}`" for p in sorted(files)) or "- (sin archivos)",
            missing=missing_text,
            generated_at=now.isoformat(),
        )

    @staticmethod
    def _zip(files: Dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for path in sorted(files):
                info = zipfile.ZipInfo(path, date_time=(1980, 1, 1, 0, 0, 0))
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, files[path])
        return buffer.getvalue()
