from __future__ import annotations

import os
import sqlite3
from typing import Dict, List, Optional, Tuple

from cdss.store.schemas import (
    Appointment,
    CaseFile,
    DiagnosisSession,
    DiagnosticModule,
    EmailOtp,
    Message,
    Notification,
    PatientProfile,
    TreatmentPlan,
    User,
    dump_json,
)


class SQLiteStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        if self.db_path not in (":memory:", ""):
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        try:
            with self._connect() as conn:
                conn.execute("PRAGMA foreign_keys=ON")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        role TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        is_verified INTEGER NOT NULL DEFAULT 0,
                        last_login TEXT,
                        specialization TEXT,
                        license_number TEXT,
                        date_of_birth TEXT,
                        gender TEXT,
                        phone TEXT,
                        avatar TEXT,
                        settings TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                user_cols = [row[1] for row in conn.execute("PRAGMA table_info(users)").fetchall()]
                if "settings" not in user_cols:
                    conn.execute("ALTER TABLE users ADD COLUMN settings TEXT")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS patient_profiles (
                        user_id TEXT PRIMARY KEY,
                        assigned_clinician_id TEXT,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS diagnosis_sessions (
                        id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        clinician_id TEXT,
                        body_region TEXT,
                        symptom_data_json TEXT,
                        symptoms_json TEXT,
                        affected_regions_json TEXT,
                        media_urls_json TEXT,
                        biodata_json TEXT,
                        ai_analysis_json TEXT,
                        patient_facing_analysis_json TEXT,
                        temporal_diagnosis_json TEXT,
                        clinician_review_json TEXT,
                        final_diagnosis_json TEXT,
                        guided_test_state_json TEXT,
                        guided_test_results_json TEXT,
                        reviewed_at TEXT,
                        completed_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS case_files (
                        id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        session_id TEXT,
                        case_file_id TEXT NOT NULL,
                        file_name TEXT NOT NULL,
                        file_url TEXT NOT NULL,
                        file_type TEXT,
                        file_size INTEGER,
                        category TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT,
                        target_role TEXT,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL,
                        type TEXT NOT NULL,
                        status TEXT NOT NULL,
                        read_by_json TEXT,
                        link TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS diagnostic_modules (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        description TEXT,
                        region TEXT NOT NULL,
                        status TEXT NOT NULL,
                        questions_json TEXT,
                        created_by TEXT,
                        updated_by TEXT,
                        version INTEGER NOT NULL,
                        is_default INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS appointments (
                        id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        clinician_id TEXT NOT NULL,
                        clinician_name TEXT,
                        date TEXT NOT NULL,
                        type TEXT,
                        location TEXT,
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS treatment_plans (
                        id TEXT PRIMARY KEY,
                        patient_id TEXT NOT NULL,
                        clinician_name TEXT,
                        condition_name TEXT NOT NULL,
                        activities_json TEXT,
                        progress INTEGER NOT NULL,
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        sender_id TEXT NOT NULL,
                        receiver_id TEXT NOT NULL,
                        conversation_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        is_read INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS email_otps (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL,
                        otp_hash TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        verified INTEGER NOT NULL DEFAULT 0,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                otp_cols = [row[1] for row in conn.execute("PRAGMA table_info(email_otps)").fetchall()]
                if "attempts" not in otp_cols:
                    conn.execute("ALTER TABLE email_otps ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sessions_patient_created ON diagnosis_sessions(patient_id, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_sessions_status ON diagnosis_sessions(status, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_case_files_patient ON case_files(patient_id, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_notifications_role ON notifications(target_role, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_modules_region ON diagnostic_modules(region, status)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_appointments_patient ON appointments(patient_id, date)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_appointments_clinician ON appointments(clinician_id, date)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_plans_patient ON treatment_plans(patient_id, status)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at)"
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_email_otps_email ON email_otps(email, verified)")
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in init_db: {exc}") from exc

    # users

    def create_user(self, user: User) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, email, password_hash, first_name, last_name, role, is_active, is_verified,
                        last_login, specialization, license_number, date_of_birth, gender, phone, avatar,
                        settings, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.id,
                        user.email.strip().lower(),
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.role,
                        int(user.is_active),
                        int(user.is_verified),
                        user.last_login,
                        user.specialization,
                        user.license_number,
                        user.date_of_birth,
                        user.gender,
                        user.phone,
                        user.avatar,
                        dump_json(user.settings or {}),
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in create_user: {exc}") from exc

    def update_user(self, user: User) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE users SET
                        email=?, password_hash=?, first_name=?, last_name=?, role=?, is_active=?,
                        is_verified=?, last_login=?, specialization=?, license_number=?,
                        date_of_birth=?, gender=?, phone=?, avatar=?, settings=?, updated_at=?
                    WHERE id = ?
                    """,
                    (
                        user.email.strip().lower(),
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.role,
                        int(user.is_active),
                        int(user.is_verified),
                        user.last_login,
                        user.specialization,
                        user.license_number,
                        user.date_of_birth,
                        user.gender,
                        user.phone,
                        user.avatar,
                        dump_json(user.settings or {}),
                        user.updated_at,
                        user.id,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in update_user: {exc}") from exc

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_user: {exc}") from exc

    def get_user_by_email(self, email: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM users WHERE email = ?",
                    ((email or "").strip().lower(),),
                ).fetchone()
            return User.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_user_by_email: {exc}") from exc

    def list_users(self, role: Optional[str] = None) -> List[User]:
        try:
            with self._connect() as conn:
                if role:
                    rows = conn.execute(
                        "SELECT * FROM users WHERE role = ? ORDER BY created_at DESC",
                        (role,),
                    ).fetchall()
                else:
                    rows = conn.execute("SELECT * FROM users ORDER BY created_at DESC").fetchall()
            return [User.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_users: {exc}") from exc

    def count_users_by_role(self) -> Dict[str, int]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT role, COUNT(*) AS n FROM users GROUP BY role").fetchall()
            return {r["role"]: int(r["n"]) for r in rows}
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in count_users_by_role: {exc}") from exc

    # patient profiles

    def upsert_patient_profile(self, profile: PatientProfile) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO patient_profiles (user_id, assigned_clinician_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        assigned_clinician_id=excluded.assigned_clinician_id,
                        updated_at=excluded.updated_at
                    """,
                    (profile.user_id, profile.assigned_clinician_id, profile.updated_at),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in upsert_patient_profile: {exc}") from exc

    def get_patient_profile(self, user_id: str) -> Optional[PatientProfile]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM patient_profiles WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
            return PatientProfile.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_patient_profile: {exc}") from exc

    def list_patients_for_clinician(self, clinician_id: str) -> List[User]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT u.* FROM users u
                    JOIN patient_profiles p ON p.user_id = u.id
                    WHERE p.assigned_clinician_id = ?
                    ORDER BY u.last_name, u.first_name
                    """,
                    (clinician_id,),
                ).fetchall()
            return [User.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_patients_for_clinician: {exc}") from exc

    # diagnosis sessions

    def save_session(self, session: DiagnosisSession) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO diagnosis_sessions (
                        id, patient_id, status, clinician_id, body_region, symptom_data_json,
                        symptoms_json, affected_regions_json, media_urls_json, biodata_json,
                        ai_analysis_json, patient_facing_analysis_json, temporal_diagnosis_json,
                        clinician_review_json, final_diagnosis_json, guided_test_state_json,
                        guided_test_results_json, reviewed_at, completed_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status=excluded.status,
                        clinician_id=excluded.clinician_id,
                        body_region=excluded.body_region,
                        symptom_data_json=excluded.symptom_data_json,
                        symptoms_json=excluded.symptoms_json,
                        affected_regions_json=excluded.affected_regions_json,
                        media_urls_json=excluded.media_urls_json,
                        biodata_json=excluded.biodata_json,
                        ai_analysis_json=excluded.ai_analysis_json,
                        patient_facing_analysis_json=excluded.patient_facing_analysis_json,
                        temporal_diagnosis_json=excluded.temporal_diagnosis_json,
                        clinician_review_json=excluded.clinician_review_json,
                        final_diagnosis_json=excluded.final_diagnosis_json,
                        guided_test_state_json=excluded.guided_test_state_json,
                        guided_test_results_json=excluded.guided_test_results_json,
                        reviewed_at=excluded.reviewed_at,
                        completed_at=excluded.completed_at,
                        updated_at=excluded.updated_at
                    """,
                    (
                        session.id,
                        session.patient_id,
                        session.status,
                        session.clinician_id,
                        session.body_region,
                        dump_json(session.symptom_data or []),
                        dump_json(session.symptoms or []),
                        dump_json(session.affected_regions or []),
                        dump_json(session.media_urls or []),
                        dump_json(session.biodata),
                        dump_json(session.ai_analysis),
                        dump_json(session.patient_facing_analysis),
                        dump_json(session.temporal_diagnosis),
                        dump_json(session.clinician_review),
                        dump_json(session.final_diagnosis),
                        dump_json(session.guided_test_state),
                        dump_json(session.guided_test_results),
                        session.reviewed_at,
                        session.completed_at,
                        session.created_at,
                        session.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in save_session: {exc}") from exc

    def get_session(self, session_id: str) -> Optional[DiagnosisSession]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM diagnosis_sessions WHERE id = ?",
                    (session_id,),
                ).fetchone()
            return DiagnosisSession.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_session: {exc}") from exc

    def list_sessions(
        self,
        patient_id: Optional[str] = None,
        status: Optional[str] = None,
        clinician_id: Optional[str] = None,
        limit: int = 20,
        page: int = 1,
    ) -> Tuple[List[DiagnosisSession], int]:
        clauses: List[str] = []
        params: List[object] = []
        if patient_id:
            clauses.append("patient_id = ?")
            params.append(patient_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if clinician_id:
            clauses.append("clinician_id = ?")
            params.append(clinician_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit = max(1, int(limit or 20))
        page = max(1, int(page or 1))
        try:
            with self._connect() as conn:
                total = conn.execute(
                    f"SELECT COUNT(*) AS n FROM diagnosis_sessions {where}",
                    params,
                ).fetchone()["n"]
                rows = conn.execute(
                    f"SELECT * FROM diagnosis_sessions {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    params + [limit, (page - 1) * limit],
                ).fetchall()
            return [DiagnosisSession.from_row(r) for r in rows], int(total)
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_sessions: {exc}") from exc

    def count_sessions_by_status(self) -> Dict[str, int]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT status, COUNT(*) AS n FROM diagnosis_sessions GROUP BY status"
                ).fetchall()
            return {r["status"]: int(r["n"]) for r in rows}
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in count_sessions_by_status: {exc}") from exc

    # case files

    def add_case_file(self, case_file: CaseFile) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO case_files (
                        id, patient_id, session_id, case_file_id, file_name, file_url,
                        file_type, file_size, category, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        case_file.id,
                        case_file.patient_id,
                        case_file.session_id,
                        case_file.case_file_id,
                        case_file.file_name,
                        case_file.file_url,
                        case_file.file_type,
                        case_file.file_size,
                        case_file.category,
                        case_file.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in add_case_file: {exc}") from exc

    def get_case_file(self, file_id: str) -> Optional[CaseFile]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM case_files WHERE id = ?", (file_id,)).fetchone()
            return CaseFile.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_case_file: {exc}") from exc

    def list_case_files(self, patient_id: str, include_internal: bool = False) -> List[CaseFile]:
        sql = "SELECT * FROM case_files WHERE patient_id = ?"
        if not include_internal:
            sql += " AND file_url NOT LIKE 'internal://%'"
        sql += " ORDER BY created_at DESC"
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, (patient_id,)).fetchall()
            return [CaseFile.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_case_files: {exc}") from exc

    def delete_case_file(self, file_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM case_files WHERE id = ?", (file_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_case_file: {exc}") from exc

    # notifications

    def add_notification(self, notification: Notification) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO notifications (
                        id, user_id, target_role, title, description, type, status,
                        read_by_json, link, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        notification.id,
                        notification.user_id,
                        notification.target_role,
                        notification.title,
                        notification.description,
                        notification.type,
                        notification.status,
                        dump_json(notification.read_by or []),
                        notification.link,
                        notification.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in add_notification: {exc}") from exc

    def update_notification_read_state(self, notification: Notification) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE notifications SET status = ?, read_by_json = ? WHERE id = ?",
                    (notification.status, dump_json(notification.read_by or []), notification.id),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in update_notification_read_state: {exc}") from exc

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM notifications WHERE id = ?",
                    (notification_id,),
                ).fetchone()
            return Notification.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_notification: {exc}") from exc

    def list_notifications_for(self, user_id: str, role: str, limit: int = 100) -> List[Notification]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM notifications
                    WHERE user_id = ?
                       OR (user_id IS NULL AND target_role IN (?, 'ALL'))
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    (user_id, role, int(limit)),
                ).fetchall()
            return [Notification.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_notifications_for: {exc}") from exc

    def list_broadcasts(self, limit: int = 50) -> List[Notification]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM notifications WHERE user_id IS NULL ORDER BY created_at DESC LIMIT ?",
                    (int(limit),),
                ).fetchall()
            return [Notification.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_broadcasts: {exc}") from exc

    def delete_notification(self, notification_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_notification: {exc}") from exc

    # diagnostic modules

    def save_module(self, module: DiagnosticModule) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO diagnostic_modules (
                        id, title, description, region, status, questions_json, created_by,
                        updated_by, version, is_default, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title=excluded.title,
                        description=excluded.description,
                        region=excluded.region,
                        status=excluded.status,
                        questions_json=excluded.questions_json,
                        updated_by=excluded.updated_by,
                        version=excluded.version,
                        is_default=excluded.is_default,
                        updated_at=excluded.updated_at
                    """,
                    (
                        module.id,
                        module.title,
                        module.description,
                        module.region,
                        module.status,
                        dump_json(module.questions or []),
                        module.created_by,
                        module.updated_by,
                        int(module.version),
                        int(module.is_default),
                        module.created_at,
                        module.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in save_module: {exc}") from exc

    def get_module(self, module_id: str) -> Optional[DiagnosticModule]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM diagnostic_modules WHERE id = ?",
                    (module_id,),
                ).fetchone()
            return DiagnosticModule.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_module: {exc}") from exc

    def list_modules(self, region: Optional[str] = None, status: Optional[str] = None) -> List[DiagnosticModule]:
        clauses: List[str] = []
        params: List[object] = []
        if region:
            clauses.append("LOWER(region) = LOWER(?)")
            params.append(region)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM diagnostic_modules {where} ORDER BY updated_at DESC, created_at DESC",
                    params,
                ).fetchall()
            return [DiagnosticModule.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_modules: {exc}") from exc

    def delete_module(self, module_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM diagnostic_modules WHERE id = ?", (module_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_module: {exc}") from exc

    # appointments

    def save_appointment(self, appointment: Appointment) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO appointments (
                        id, patient_id, clinician_id, clinician_name, date, type, location, status, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        date=excluded.date,
                        type=excluded.type,
                        location=excluded.location,
                        status=excluded.status
                    """,
                    (
                        appointment.id,
                        appointment.patient_id,
                        appointment.clinician_id,
                        appointment.clinician_name,
                        appointment.date,
                        appointment.type,
                        appointment.location,
                        appointment.status,
                        appointment.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in save_appointment: {exc}") from exc

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM appointments WHERE id = ?",
                    (appointment_id,),
                ).fetchone()
            return Appointment.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_appointment: {exc}") from exc

    def list_appointments(
        self, patient_id: Optional[str] = None, clinician_id: Optional[str] = None
    ) -> List[Appointment]:
        clauses: List[str] = []
        params: List[object] = []
        if patient_id:
            clauses.append("patient_id = ?")
            params.append(patient_id)
        if clinician_id:
            clauses.append("clinician_id = ?")
            params.append(clinician_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            with self._connect() as conn:
                rows = conn.execute(f"SELECT * FROM appointments {where} ORDER BY date ASC", params).fetchall()
            return [Appointment.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_appointments: {exc}") from exc

    def delete_appointment(self, appointment_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM appointments WHERE id = ?", (appointment_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_appointment: {exc}") from exc

    # treatment plans

    def save_treatment_plan(self, plan: TreatmentPlan) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO treatment_plans (
                        id, patient_id, clinician_name, condition_name, activities_json,
                        progress, status, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        activities_json=excluded.activities_json,
                        progress=excluded.progress,
                        status=excluded.status,
                        updated_at=excluded.updated_at
                    """,
                    (
                        plan.id,
                        plan.patient_id,
                        plan.clinician_name,
                        plan.condition_name,
                        dump_json(plan.activities or []),
                        int(plan.progress),
                        plan.status,
                        plan.created_at,
                        plan.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in save_treatment_plan: {exc}") from exc

    def get_active_treatment_plan(self, patient_id: str) -> Optional[TreatmentPlan]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM treatment_plans
                    WHERE patient_id = ? AND status = 'active'
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (patient_id,),
                ).fetchone()
            return TreatmentPlan.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_active_treatment_plan: {exc}") from exc

    def list_treatment_plans(self, patient_id: str) -> List[TreatmentPlan]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM treatment_plans WHERE patient_id = ? ORDER BY created_at DESC",
                    (patient_id,),
                ).fetchall()
            return [TreatmentPlan.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_treatment_plans: {exc}") from exc

    # messages

    def add_message(self, message: Message) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO messages (id, sender_id, receiver_id, conversation_id, content, is_read, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.sender_id,
                        message.receiver_id,
                        message.conversation_id,
                        message.content,
                        int(message.is_read),
                        message.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in add_message: {exc}") from exc

    def list_conversation(self, conversation_id: str) -> List[Message]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC",
                    (conversation_id,),
                ).fetchall()
            return [Message.from_row(r) for r in rows]
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in list_conversation: {exc}") from exc

    def mark_messages_read(self, sender_id: str, receiver_id: str) -> int:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE messages SET is_read = 1 WHERE sender_id = ? AND receiver_id = ? AND is_read = 0",
                    (sender_id, receiver_id),
                )
            return int(cur.rowcount or 0)
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in mark_messages_read: {exc}") from exc

    # email otps

    def delete_unverified_otps(self, email: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM email_otps WHERE email = ? AND verified = 0",
                    ((email or "").strip().lower(),),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_unverified_otps: {exc}") from exc

    def add_otp(self, otp: EmailOtp) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_otps (id, email, otp_hash, expires_at, verified, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        otp.id,
                        otp.email.strip().lower(),
                        otp.otp_hash,
                        otp.expires_at,
                        int(otp.verified),
                        otp.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in add_otp: {exc}") from exc

    def get_pending_otp(self, email: str) -> Optional[EmailOtp]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM email_otps
                    WHERE email = ? AND verified = 0
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    ((email or "").strip().lower(),),
                ).fetchone()
            return EmailOtp.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_pending_otp: {exc}") from exc

    def mark_otp_verified(self, otp_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("UPDATE email_otps SET verified = 1 WHERE id = ?", (otp_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in mark_otp_verified: {exc}") from exc

    def record_otp_failure(self, otp_id: str) -> int:
        try:
            with self._connect() as conn:
                conn.execute("UPDATE email_otps SET attempts = attempts + 1 WHERE id = ?", (otp_id,))
                row = conn.execute("SELECT attempts FROM email_otps WHERE id = ?", (otp_id,)).fetchone()
            return int(row["attempts"]) if row else 0
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in record_otp_failure: {exc}") from exc

    def delete_otp(self, otp_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM email_otps WHERE id = ?", (otp_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_otp: {exc}") from exc

    def get_verified_otp(self, email: str) -> Optional[EmailOtp]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM email_otps
                    WHERE email = ? AND verified = 1
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    ((email or "").strip().lower(),),
                ).fetchone()
            return EmailOtp.from_row(row) if row else None
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in get_verified_otp: {exc}") from exc

    def delete_otps_for(self, email: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM email_otps WHERE email = ?", ((email or "").strip().lower(),))
        except sqlite3.Error as exc:
            raise RuntimeError(f"SQLite error in delete_otps_for: {exc}") from exc
