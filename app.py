import html
import logging
import os
import socket
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from cdss import config
from cdss.agents import triage_agent
from cdss.auth import credentials, otp_service, session_tokens
from cdss.services import accounts, admin, assessments, care, clinician_settings, guided_tests, media, notifications
from cdss.services.errors import ServiceError, not_found, unauthorized
from cdss.store.schemas import User
from cdss.store.sqlite_store import SQLiteStore
from cdss.tools import region_rules
from cdss.ui import patient_app, patient_pages, staff_app, staff_pages

config.setup_logging()
logger = logging.getLogger("cdss.app")

# Database and upload locations; tests point these elsewhere through configure()
DB_PATH = config.DB_PATH
UPLOADS_DIR = config.UPLOADS_DIR

STAFF_ROLES = ("CLINICIAN", "ADMIN")


# Global CSS stylesheet for the login screen and the three portals
CSS = """
:root {
  --gray: #DDE4EE;
  --lime: #CFE67E;
  --teal: #6AB8C4;
  --light-teal: #C2F2F4;
  --white: #FFFFFF;
  --black: #000000;
  --danger: #D64545;
  --warn: #E0A526;
  --nav-icon-size: 20px;
}
* { box-sizing: border-box; }
html, body {
  width: 100%;
  height: 100%;
  margin: 0;
  font-family: "Segoe UI", "Helvetica Neue", Arial, sans-serif;
  color: var(--black);
  background: var(--white);
}
input, select, textarea { font: inherit; }
/* Login */
.login-page {
  width: 100%;
  min-height: 100vh;
  display: flex;
  flex-direction: column;
  background: radial-gradient(1200px 800px at 80% 10%, rgba(194,242,244,0.7), transparent 60%),
              radial-gradient(900px 600px at 10% 90%, rgba(207,230,126,0.35), transparent 60%),
              #F6F9FC;
}
.login-brand { display: flex; align-items: center; gap: 12px; padding: 40px 0 0 40px; }
.login-brand .brand-text { font-size: 22px; font-weight: 600; }
.login-brand .brand-text .brand-accent { color: var(--teal); font-weight: 500; }
.login-content { flex: 1; display: flex; align-items: flex-start; padding-left: 140px; padding-top: 80px; }
.login-panel { width: 460px; max-width: 90vw; }
.login-label { font-size: 20px; font-weight: 500; margin-bottom: 14px; }
.login-title { font-size: 34px; font-weight: 700; margin: 0 0 36px 0; }
.input-group { display:flex; align-items:center; height:48px; background:var(--white); border:1px solid var(--gray); border-radius:6px; margin-bottom:18px; overflow:hidden; width:100%; }
.icon-box { width:48px; height:48px; display:flex; align-items:center; justify-content:center; background:#F5F7FA; border-right:1px solid var(--gray); }
.input-group input, .input-group select { border:none; outline:none; padding:0 14px; flex:1; font-size:16px; background:transparent; height:48px; }
input::placeholder, textarea::placeholder { color: #9AA3AF; }
.login-btn { width:100%; height:48px; border:none; border-radius:8px; background:var(--lime); color:var(--black); font-size:17px; font-weight:600; cursor:pointer; }
.login-actions { display:flex; gap:10px; align-items:center; margin-top:2px; }
.login-actions .login-btn { flex:1; width:auto; }
.login-secondary-btn { height:48px; border:1px solid var(--gray); border-radius:8px; background:#FFFFFF; color:#0B3A44; font-size:16px; font-weight:600; padding:0 16px; cursor:pointer; white-space:nowrap; }
.register-row { display:grid; grid-template-columns: 1fr 1fr; gap:10px; }
.register-note { font-size:13px; color:#6B7280; margin-top:8px; }
.otp-row { display:flex; gap:10px; }
.otp-row .input-group { flex:1; }
.icon { width: 18px; height: 18px; stroke: #9AA3AF; fill: none; stroke-width: 1.8; stroke-linecap: round; stroke-linejoin: round; }
.nav-item .icon, .logout .icon { margin-right: 6px; }
/* Portal layout */
.dash-page {
  min-height: 100vh;
  display: flex;
  gap: 28px;
  padding: 28px;
  background: radial-gradient(1200px 800px at 80% 10%, rgba(194,242,244,0.6), transparent 60%), #F6F9FC;
}
.sidebar {
  width: 260px;
  background: var(--white);
  position: sticky;
  top: 24px;
  align-self: stretch;
  height: calc(100vh - 56px);
  box-shadow: 0 8px 30px rgba(7, 23, 43, 0.08);
  padding: 24px 18px;
  display: flex;
  flex-direction: column;
  gap: 18px;
}
.sidebar .brand .brand-text { font-size: 16px; font-weight: 700; padding: 4px 6px; }
.sidebar .brand .brand-text .brand-accent { color: var(--teal); }
.nav { display: flex; flex-direction: column; gap: 8px; }
.nav-item { display: flex; align-items: center; gap: 10px; padding: 10px 12px; border-radius: 12px; color: #1B2B3A; font-weight: 600; cursor: pointer; }
.nav-item.active { background: rgba(106,184,196,0.35); color: #0B3A44; }
.nav-item svg { width: var(--nav-icon-size); height: var(--nav-icon-size); }
.sidebar .profile { margin-top: auto; padding: 14px; border-radius: 16px; background: #F4F7FB; display: flex; align-items: center; gap: 12px; }
.profile img { width: 52px; height: 52px; border-radius: 50%; }
.profile .name { font-weight: 700; }
.profile .role { color: #6B7280; font-size: 13px; }
.logout { display: flex; align-items: center; gap: 8px; color: #1B2B3A; font-weight: 600; cursor: pointer; }
.main { flex: 1; padding: 28px 32px; overflow-y: auto; height: calc(100vh - 56px); position: relative; }
.header-title { font-size: 32px; font-weight: 800; margin-bottom: 4px; }
.header-sub { color: #6B7280; margin-bottom: 22px; }
.section-title { font-size: 20px; font-weight: 700; margin: 16px 0 10px; }
.section-sub { font-size: 14px; color: #6B7280; }
.card-row { display: grid; grid-template-columns: repeat(3, minmax(0, 1fr)); gap: 16px; margin-bottom: 16px; }
.card { background: var(--white); border-radius: 16px; padding: 16px 18px; box-shadow: 0 8px 20px rgba(18, 38, 63, 0.08); margin-bottom: 16px; }
.card h4, .card-title { margin: 0 0 8px 0; font-size: 16px; font-weight: 700; }
.big-num { font-size: 30px; font-weight: 800; color: #0B3A44; }
.muted { color: #6B7280; font-size: 13px; }
.link { color: var(--teal); font-weight: 600; cursor: pointer; }
.empty { color: #6B7280; padding: 8px 0; }
.split { display:grid; grid-template-columns: 1.6fr 1fr; gap:18px; }
.quick-row { margin-top: 16px; display: grid; grid-template-columns: repeat(3, minmax(0, 1fr)); gap: 16px; }
.quick-card { background: var(--white); border-radius: 16px; padding: 16px; box-shadow: 0 8px 18px rgba(18, 38, 63, 0.08); display: flex; flex-direction: column; gap: 10px; cursor: pointer; }
.quick-card .q-title { font-weight: 700; }
.progress-ring { width: 64px; height: 64px; }
.care-grid { display:grid; grid-template-columns: repeat(2, minmax(0,1fr)); gap:16px; }
.plan-item { background:#FFFFFF; border-radius:16px; padding:16px; box-shadow:0 8px 18px rgba(18,38,63,0.08); border:1px solid #EEF2F6; }
.care-pill { display:inline-flex; align-items:center; gap:6px; padding:4px 10px; border-radius:999px; border:1px solid var(--teal); color:#0B3A44; font-weight:600; font-size:12px; background:#E8F6F8; }
.care-title { margin:10px 0 8px; font-size:18px; font-weight:700; }
.care-sub { color:#374151; font-size:14px; margin-top:8px; }
.care-bullets { color:#374151; font-size:14px; line-height:1.5; padding-left: 18px; margin: 6px 0 8px 0; }
.care-date-row { display:flex; align-items:center; justify-content:space-between; color:#6B7280; font-size:12px; }
.care-focus { margin-top: 8px; font-weight: 600; color: #0B3A44; }
.care-action { padding:10px 18px; border-radius:14px; border:1px solid #DDE4EE; background:#FFFFFF; cursor:pointer; font-weight:600; font-size:15px; margin-top:10px; }
.care-action-primary { background:var(--lime); border-color:var(--lime); color:#0B3A44; }
.disclaimer { margin-top:10px; font-size:12px; color:#6B7280; border-top:1px dashed #DDE4EE; padding-top:8px; }
.alert { background:#FDECEC; border:1px solid #F5B5B5; color:#7A1F1F; border-radius:12px; padding:10px 14px; margin:10px 0; }
/* Assessment wizard */
.check-in-card { background:#FFFFFF; border-radius:18px; padding:22px 24px; box-shadow:0 12px 26px rgba(18,38,63,0.1); max-width: 760px; display:flex; flex-direction:column; gap:14px; }
.daily-progress { display:flex; align-items:center; gap:12px; }
.progress-bar { flex:1; height:10px; border-radius:999px; background:#EEF2F6; overflow:hidden; }
.progress-bar > div { height:100%; background: var(--teal); }
.progress-pct { min-width: 48px; text-align: right; color: #6B7280; }
.dc-content { display:flex; flex-direction:column; gap:10px; }
.dc-radio-pill { display:block; width:100%; text-align:left; padding:12px 16px; border:1px solid #DDE4EE; border-radius:12px; background:#FFFFFF; cursor:pointer; font-weight:600; }
.dc-radio-pill:hover { background:#E8F6F8; border-color: var(--teal); }
.dc-input { height:44px; border:1px solid #DDE4EE; border-radius:10px; padding:0 12px; }
.dc-textarea { width:100%; min-height:80px; border:1px solid #DDE4EE; border-radius:10px; padding:10px 12px; }
.dc-actions { display:flex; gap:10px; }
.dc-btn { padding:10px 18px; border-radius:12px; border:1px solid #DDE4EE; background:#FFFFFF; cursor:pointer; font-weight:600; }
.dc-btn:disabled { opacity: 0.5; cursor: not-allowed; }
.dc-next { background: var(--lime); border: none; color: #0B3A44; }
.dc-save { color: var(--teal); font-weight: 600; cursor: pointer; }
/* Staff tables */
.staff-toolbar { display:flex; flex-wrap:wrap; gap:12px; align-items:center; background:#FFFFFF; padding:12px 14px; border-radius:16px; box-shadow:0 8px 18px rgba(18,38,63,0.08); margin-bottom:16px; }
.toolbar-filters { display:flex; gap:8px; flex-wrap:wrap; }
.toolbar-item { display:inline-block; margin:6px 8px 6px 0; font-weight:600; color:#0B3A44; }
.chip { border:1px solid #DDE4EE; background:#FFFFFF; border-radius:999px; padding:6px 14px; font-weight:600; cursor:pointer; color:#0B3A44; }
.chip.active { background: var(--light-teal); border-color: var(--teal); }
.case-grid { display:grid; grid-template-columns: minmax(0, 1.6fr) minmax(0, 1fr); gap:16px; align-items:start; }
.case-head, .case-row { display:grid; grid-template-columns: 1.3fr 1fr 0.8fr 1.2fr 0.9fr 0.8fr; gap:10px; align-items:center; font-size:14px; }
.case-head > div, .case-row > div { min-width:0; }
.case-head { font-weight:700; color:#6B7280; padding-bottom:8px; border-bottom:1px solid #EEF2F6; }
.case-row { padding:10px 0; border-bottom:1px solid #EEF2F6; }
.case-row.empty { display:block; color:#6B7280; }
.case-table { overflow-x:auto; }
.side-stack { display:flex; flex-direction:column; gap:16px; min-width:0; }
.mono { font-family: Consolas, monospace; word-break: break-word; }
.risk-badge { display:inline-flex; align-items:center; border-radius:999px; padding:4px 10px; font-weight:700; font-size:12px; white-space:nowrap; }
.risk-low { background:#EAF6E3; color:#3D7A23; }
.risk-moderate { background:#FFF4DA; color:#8A5A00; }
.risk-urgent { background:#FDECEC; color:#A12121; }
.pending-list { display:flex; flex-direction:column; gap:8px; }
.pending-item { display:grid; grid-template-columns: auto 1fr auto; gap:10px; align-items:center; padding:8px 0; border-bottom:1px solid #EEF2F6; }
.pending-item.unread .pending-summary { font-weight:700; }
.pending-time { color:#6B7280; font-size:12px; }
.pill-btn { border:1px solid #DDE4EE; background:#FFFFFF; border-radius:999px; padding:6px 14px; font-weight:700; cursor:pointer; margin:2px; }
.inline-form { display:flex; flex-direction:column; gap:8px; }
.inline-form input, .inline-form select { height:38px; border:1px solid #DDE4EE; border-radius:10px; padding:0 10px; }
.upload-card { display:flex; gap:10px; align-items:center; }
.thumb { width:72px; height:72px; object-fit:cover; border-radius:10px; margin:4px; }
/* Messages */
.chat-panel { background:#FFFFFF; border-radius:16px; box-shadow:0 10px 22px rgba(18,38,63,0.08); padding:16px; display:flex; flex-direction:column; min-height: 60vh; }
.chat-bubbles { flex:1; display:flex; flex-direction:column; gap:10px; overflow-y:auto; }
.chat-empty { flex:1; display:flex; align-items:center; justify-content:center; color:#6B7280; }
.bubble { max-width: 70%; padding:10px 12px; border-radius:12px; box-shadow:0 4px 10px rgba(18,38,63,0.08); }
.bubble.user { align-self:flex-end; background: var(--light-teal); }
.bubble.bot { align-self:flex-start; background: #F4F7FB; }
.bubble-time { font-size:11px; color:#6B7280; margin-top:4px; }
.chat-input-bar { display:flex; align-items:center; gap:8px; border:1px solid #DDE4EE; border-radius:12px; padding:8px 10px; margin-top:10px; }
.chat-input-bar input { flex:1; border:none; outline:none; height:40px; }
.chat-send { background:var(--lime); border:none; font-weight:700; padding:0 16px; height:40px; border-radius:10px; cursor:pointer; }
.mini-toast {
  position: fixed;
  left: 50%;
  bottom: 24px;
  transform: translateX(-50%);
  background: rgba(55, 65, 81, 0.92);
  color: #F9FAFB;
  padding: 10px 14px;
  border-radius: 12px;
  font-size: 13px;
  z-index: 9999;
  opacity: 0;
  pointer-events: none;
  transition: opacity 0.2s ease;
}
.mini-toast.show { opacity: 1; }
@media (max-width: 1100px) {
  .card-row, .split, .case-grid, .care-grid { grid-template-columns: 1fr; }
  .login-content { padding-left: 20px; }
}
"""

ICONS = {
    "user": '<svg class="icon" viewBox="0 0 24 24"><circle cx="12" cy="8" r="4"/><path d="M4 20c2-4 14-4 16 0"/></svg>',
    "lock": '<svg class="icon" viewBox="0 0 24 24"><rect x="5" y="11" width="14" height="9" rx="2"/><path d="M8 11V8a4 4 0 0 1 8 0v3"/></svg>',
    "mail": '<svg class="icon" viewBox="0 0 24 24"><rect x="3" y="6" width="18" height="12" rx="2"/><path d="M3 8l9 6 9-6"/></svg>',
    "dashboard": '<svg class="icon" viewBox="0 0 24 24"><rect x="4" y="4" width="7" height="7" rx="1"/><rect x="13" y="4" width="7" height="7" rx="1"/><rect x="4" y="13" width="7" height="7" rx="1"/><rect x="13" y="13" width="7" height="7" rx="1"/></svg>',
    "calendar": '<svg class="icon" viewBox="0 0 24 24"><rect x="3" y="5" width="18" height="16" rx="2"/><path d="M8 3v4M16 3v4M3 10h18"/></svg>',
    "card": '<svg class="icon" viewBox="0 0 24 24"><rect x="4" y="4" width="16" height="16" rx="2"/><path d="M8 8h8M8 12h8M8 16h5"/></svg>',
    "chat": '<svg class="icon" viewBox="0 0 24 24"><path d="M5 5h14a3 3 0 0 1 3 3v6a3 3 0 0 1-3 3H10l-5 4v-4H5a3 3 0 0 1-3-3V8a3 3 0 0 1 3-3z"/></svg>',
    "inbox": '<svg class="icon" viewBox="0 0 24 24"><rect x="3" y="6" width="18" height="12" rx="2"/><path d="M3 8l9 6 9-6"/></svg>',
    "logout": '<svg class="icon" viewBox="0 0 24 24"><path d="M10 4H5a2 2 0 0 0-2 2v12a2 2 0 0 0 2 2h5"/><path d="M17 16l4-4-4-4"/><path d="M21 12H9"/></svg>',
}


def configure(*, db_path: Optional[str] = None, uploads_dir: Optional[str] = None, rules_dir: Optional[str] = None) -> None:
    """Point every stateful module at the same database and upload folder."""
    global DB_PATH, UPLOADS_DIR
    DB_PATH = db_path or DB_PATH
    UPLOADS_DIR = uploads_dir or UPLOADS_DIR
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    os.makedirs(UPLOADS_DIR, exist_ok=True)
    credentials.configure(db_path=DB_PATH)
    otp_service.configure(db_path=DB_PATH)
    otp_service.RATE_LIMITER.reset()
    media.configure(uploads_dir=UPLOADS_DIR)
    if rules_dir:
        region_rules.configure(rules_dir=rules_dir)
    patient_app.configure(db_path=DB_PATH, icons=ICONS)
    staff_app.configure()
    _mount_uploads()
    get_store()


def get_store() -> SQLiteStore:
    return patient_app.get_store()



def _wrap_page(body_html: str, title: str = "CDSS Portal") -> str:
    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{html.escape(title)}</title>
  <style>{CSS}</style>
</head>
<body>
{body_html}
<script>
function cdssToast(msg) {{
  if (!msg) return;
  var el = document.getElementById('cdss_toast');
  if (!el) {{
    el = document.createElement('div');
    el.id = 'cdss_toast';
    el.className = 'mini-toast';
    document.body.appendChild(el);
  }}
  el.textContent = msg;
  el.classList.add('show');
  clearTimeout(window._cdssToastTimer);
  window._cdssToastTimer = setTimeout(function() {{
    if (el) el.classList.remove('show');
  }}, 2200);
}}
async function cdssApi(url, method, body, next) {{
  if (window._cdssBusy) return null;
  window._cdssBusy = true;
  try {{
    var opts = {{ method: method || 'POST', credentials: 'same-origin', cache: 'no-store', headers: {{}} }};
    if (body && opts.method !== 'GET' && opts.method !== 'DELETE') {{
      opts.headers['Content-Type'] = 'application/json';
      opts.body = JSON.stringify(body);
    }}
    var res = await fetch(url, opts);
    var data = {{}};
    try {{ data = await res.json(); }} catch (e) {{}}
    if (!res.ok) {{
      cdssToast((data && data.error) || 'Request failed');
      return null;
    }}
    if (next === 'reload') window.location.reload();
    else if (next) window.location.href = next;
    return data;
  }} catch (e) {{
    cdssToast('Network error. Please retry.');
    return null;
  }} finally {{
    window._cdssBusy = false;
  }}
}}
async function cdssLogout() {{
  await fetch('/api/auth/logout', {{ method: 'POST', credentials: 'same-origin' }});
  window.location.href = '/login';
}}
function cdssVal(id) {{
  var el = document.getElementById(id);
  return el ? (el.value || '').trim() : '';
}}
async function cdssLogin() {{
  var data = await cdssApi('/api/auth/login', 'POST', {{ email: cdssVal('login_email'), password: document.getElementById('login_password').value }}, null);
  if (data && data.redirect) window.location.href = data.redirect;
}}
async function cdssSendOtp() {{
  var data = await cdssApi('/api/otp/send', 'POST', {{ email: cdssVal('register_email') }}, null);
  if (data) cdssToast(data.message || 'Code sent');
}}
async function cdssVerifyOtp() {{
  var data = await cdssApi('/api/otp/verify', 'POST', {{ email: cdssVal('register_email'), otp: cdssVal('register_otp') }}, null);
  if (data) {{
    window._cdssEmailVerified = true;
    cdssToast(data.message || 'Email verified');
  }}
}}
async function cdssRegister() {{
  var password = document.getElementById('register_password').value;
  if (password !== document.getElementById('register_password2').value) {{
    cdssToast('Password confirmation does not match.');
    return;
  }}
  if (!window._cdssEmailVerified) {{
    cdssToast('Please verify your email first.');
    return;
  }}
  var data = await cdssApi('/api/auth/register', 'POST', {{
    email: cdssVal('register_email'),
    password: password,
    firstName: cdssVal('register_first'),
    lastName: cdssVal('register_last'),
    role: cdssVal('register_role')
  }}, null);
  if (data) {{
    cdssToast('Account created. Please log in.');
    setTimeout(function() {{ window.location.href = '/login'; }}, 800);
  }}
}}
async function cdssFinishAssessment() {{
  var biodata = {{
    fullName: cdssVal('bio_fullName'),
    sex: cdssVal('bio_sex'),
    ageRange: cdssVal('bio_ageRange'),
    occupation: cdssVal('bio_occupation'),
    notes: cdssVal('bio_notes')
  }};
  await cdssApi('/api/assessment/finish', 'POST', {{ biodata: biodata }}, '/patient/dashboard');
}}
async function cdssUploadDocument(inputId, categoryId, patientId) {{
  var input = document.getElementById(inputId);
  var file = input && input.files && input.files[0];
  if (!file) {{
    cdssToast('Choose a file first.');
    return;
  }}
  var fd = new FormData();
  fd.append('file', file);
  fd.append('preset', 'case_files');
  var res = await fetch('/api/upload', {{ method: 'POST', body: fd, credentials: 'same-origin' }});
  var data = {{}};
  try {{ data = await res.json(); }} catch (e) {{}}
  if (!res.ok) {{
    cdssToast((data && data.error) || 'Upload failed');
    return;
  }}
  await cdssApi('/api/documents', 'POST', {{
    fileUrl: data.data.url,
    fileName: file.name,
    fileType: file.type,
    fileSize: data.data.bytes,
    category: cdssVal(categoryId),
    patientId: patientId || undefined
  }}, 'reload');
}}
</script>
</body>
</html>
"""


def _render_login_html() -> str:
    login_html = f"""
<div class="login-page">
  <div class="login-brand"><div class="brand-text">CDSS <span class="brand-accent">Portal</span></div></div>
  <div class="login-content">
    <div class="login-panel">
      <div class="login-label">Log in</div>
      <div class="login-title">Clinical Decision Support</div>
      <div class="input-group"><div class="icon-box">{ICONS['mail']}</div><input id="login_email" type="email" placeholder="Email address" /></div>
      <div class="input-group"><div class="icon-box">{ICONS['lock']}</div><input id="login_password" type="password" placeholder="Password"
        onkeydown="if(event.key==='Enter'){{cdssLogin();}}" /></div>
      <div class="login-actions">
        <button class="login-btn" onclick="cdssLogin(); return false;">Log in</button>
        <button class="login-secondary-btn" onclick="window.location.href='/register'; return false;">Create account</button>
      </div>
    </div>
  </div>
</div>
"""
    return _wrap_page(login_html, "Log in | CDSS Portal")


def _render_register_html() -> str:
    register_html = f"""
<div class="login-page">
  <div class="login-brand"><div class="brand-text">CDSS <span class="brand-accent">Portal</span></div></div>
  <div class="login-content">
    <div class="login-panel">
      <div class="login-label">Create account</div>
      <div class="register-row">
        <div class="input-group"><input id="register_first" type="text" placeholder="First name" maxlength="50" /></div>
        <div class="input-group"><input id="register_last" type="text" placeholder="Last name" maxlength="50" /></div>
      </div>
      <div class="otp-row">
        <div class="input-group"><div class="icon-box">{ICONS['mail']}</div><input id="register_email" type="email" placeholder="Email address" /></div>
        <button class="login-secondary-btn" onclick="cdssSendOtp(); return false;">Send code</button>
      </div>
      <div class="otp-row">
        <div class="input-group"><input id="register_otp" type="text" inputmode="numeric" maxlength="4" placeholder="4-digit code" /></div>
        <button class="login-secondary-btn" onclick="cdssVerifyOtp(); return false;">Verify</button>
      </div>
      <div class="input-group"><div class="icon-box">{ICONS['user']}</div>
        <select id="register_role"><option value="PATIENT">Patient</option><option value="CLINICIAN">Clinician</option></select>
      </div>
      <div class="input-group"><div class="icon-box">{ICONS['lock']}</div><input id="register_password" type="password" placeholder="Password (min {credentials.MIN_PASSWORD_LENGTH} chars)" /></div>
      <div class="input-group"><div class="icon-box">{ICONS['lock']}</div><input id="register_password2" type="password" placeholder="Confirm password" /></div>
      <div class="login-actions">
        <button class="login-btn" onclick="cdssRegister(); return false;">Create account</button>
        <button class="login-secondary-btn" onclick="window.location.href='/login'; return false;">Back to log in</button>
      </div>
      <div class="register-note">We send a one-time code to confirm your email address.</div>
    </div>
  </div>
</div>
"""
    return _wrap_page(register_html, "Register | CDSS Portal")


app = FastAPI(title="CDSS Portal")


@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


def _mount_uploads() -> None:
    app.router.routes[:] = [r for r in app.router.routes if getattr(r, "name", None) != "uploads"]
    app.mount("/uploads", StaticFiles(directory=UPLOADS_DIR), name="uploads")


configure()


def _require_user(request: Request, roles: Optional[tuple] = None, denied_status: int = 401) -> User:
    claims = session_tokens.resolve_request_claims(request)
    if not claims:
        raise unauthorized()
    user = get_store().get_user(str(claims.get("id")))
    if user is None or not user.is_active:
        raise unauthorized()
    if roles and user.role not in roles:
        raise ServiceError("Forbidden" if denied_status == 403 else "Unauthorized", denied_status)
    return user


def _require_admin(request: Request) -> User:
    return _require_user(request, ("ADMIN",), 403)


def _require_clinician(request: Request) -> User:
    return _require_user(request, ("CLINICIAN",), 401)


def _require_staff(request: Request) -> User:
    return _require_user(request, STAFF_ROLES, 401)


def _set_auth_cookie(resp: JSONResponse, token: str) -> None:
    resp.set_cookie(
        config.AUTH_COOKIE,
        token,
        max_age=config.SESSION_MAX_AGE_DAYS * 86400,
        httponly=True,
        samesite="lax",
    )


# ---------------------------------------------------------------- pages


def _page_user(request: Request):
    claims = session_tokens.resolve_request_claims(request)
    if not claims:
        return None, RedirectResponse("/login", status_code=303)
    user = get_store().get_user(str(claims.get("id")))
    if user is None or not user.is_active:
        resp = RedirectResponse("/login", status_code=303)
        resp.delete_cookie(config.AUTH_COOKIE)
        return None, resp
    # the stored role decides, a stale token may still carry an old one
    target = session_tokens.page_redirect(request.url.path, session_tokens.build_claims(user))
    if target:
        return None, RedirectResponse(target, status_code=303)
    return user, None


@app.get("/", response_class=HTMLResponse)
def index(request: Request):
    claims = session_tokens.resolve_request_claims(request)
    return RedirectResponse(session_tokens.dashboard_for(claims.get("role")) if claims else "/login", status_code=303)


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    claims = session_tokens.resolve_request_claims(request)
    if claims:
        return RedirectResponse(session_tokens.dashboard_for(claims.get("role")), status_code=303)
    return HTMLResponse(_render_login_html())


@app.get("/register", response_class=HTMLResponse)
def register_page(request: Request):
    claims = session_tokens.resolve_request_claims(request)
    if claims:
        return RedirectResponse(session_tokens.dashboard_for(claims.get("role")), status_code=303)
    return HTMLResponse(_render_register_html())


@app.get("/patient/{page}", response_class=HTMLResponse)
def patient_page(request: Request, page: str):
    user, redirect = _page_user(request)
    if redirect:
        return redirect
    if page not in ("dashboard", "assessment", "documents", "messages"):
        return RedirectResponse("/patient/dashboard", status_code=303)
    body = patient_pages.render_patient_page(page, user.id, patient_app.get_patient_ctx())
    return HTMLResponse(_wrap_page(f"<div id='app_root'>{body}</div>"))


@app.get("/clinician/dashboard", response_class=HTMLResponse)
def clinician_dashboard_page(request: Request):
    user, redirect = _page_user(request)
    if redirect:
        return redirect
    body = staff_pages.render_clinician_page(user.id, staff_app.get_staff_ctx())
    return HTMLResponse(_wrap_page(f"<div id='app_root'>{body}</div>"))


@app.get("/clinician/settings", response_class=HTMLResponse)
def clinician_settings_page(request: Request):
    user, redirect = _page_user(request)
    if redirect:
        return redirect
    if user.role != "CLINICIAN":
        return RedirectResponse(session_tokens.dashboard_for(user.role), status_code=303)
    body = staff_pages.render_clinician_page(user.id, staff_app.get_staff_ctx(), page="settings")
    return HTMLResponse(_wrap_page(f"<div id='app_root'>{body}</div>"))


@app.get("/clinician/cases/{session_id}", response_class=HTMLResponse)
def clinician_case_page(request: Request, session_id: str):
    user, redirect = _page_user(request)
    if redirect:
        return redirect
    if get_store().get_session(session_id) is None:
        return RedirectResponse("/clinician/dashboard", status_code=303)
    body = staff_pages.render_clinician_page(user.id, staff_app.get_staff_ctx(), case_id=session_id)
    return HTMLResponse(_wrap_page(f"<div id='app_root'>{body}</div>"))


@app.get("/admin/{page}", response_class=HTMLResponse)
def admin_page(request: Request, page: str, role: Optional[str] = None, region: Optional[str] = None, status: Optional[str] = None):
    user, redirect = _page_user(request)
    if redirect:
        return redirect
    if page not in ("dashboard", "users", "diagnostics"):
        return RedirectResponse("/admin/dashboard", status_code=303)
    filters = {"role": role, "region": region, "status": status}
    body = staff_pages.render_admin_page(page, user.id, staff_app.get_staff_ctx(), filters)
    return HTMLResponse(_wrap_page(f"<div id='app_root'>{body}</div>"))


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------- auth


@app.post("/api/auth/register")
def api_register(payload: Dict[str, Any]):
    user = accounts.register_user(get_store(), payload)
    return JSONResponse({"success": True, "message": "User registered successfully", "user": user.to_dict()}, status_code=201)


@app.post("/api/auth/login")
def api_login(payload: Dict[str, Any]):
    user, token = accounts.login(get_store(), payload.get("email"), payload.get("password"))
    resp = JSONResponse(
        {
            "success": True,
            "token": token,
            "user": session_tokens.build_claims(user),
            "redirect": session_tokens.dashboard_for(user.role),
        }
    )
    _set_auth_cookie(resp, token)
    return resp


@app.post("/api/auth/logout")
def api_logout():
    resp = JSONResponse({"success": True})
    resp.delete_cookie(config.AUTH_COOKIE)
    return resp


@app.get("/api/auth/session")
def api_session(request: Request):
    user = _require_user(request)
    return {"success": True, "user": session_tokens.build_claims(user)}


@app.post("/api/otp/send")
def api_otp_send(payload: Dict[str, Any]):
    email = str(payload.get("email") or "").strip()
    if not otp_service.is_valid_email(email):
        raise ServiceError("Valid email is required", 400)
    if not otp_service.RATE_LIMITER.check(email):
        raise ServiceError("Please wait before requesting another OTP.", 429)
    return otp_service.send_otp(email)


@app.post("/api/otp/verify")
def api_otp_verify(payload: Dict[str, Any]):
    email = str(payload.get("email") or "").strip()
    code = str(payload.get("otp") or "").strip()
    if not email or not code:
        raise ServiceError("Email and OTP are required", 400)
    result = otp_service.verify_otp(email, code)
    if not result["success"]:
        raise ServiceError(result["message"], 400)
    return result


# ---------------------------------------------------------------- diagnosis sessions


@app.get("/api/diagnosis")
def api_list_sessions(
    request: Request,
    patientId: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    page: int = 1,
):
    user = _require_user(request)
    if user.role == "PATIENT":
        patientId = user.id
    return assessments.list_sessions_page(get_store(), patient_id=patientId, status=status, limit=limit, page=page)


@app.post("/api/diagnosis")
def api_create_session(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    if user.role == "PATIENT":
        payload = dict(payload, patientId=user.id)
    session = assessments.create_heuristic_session(get_store(), payload)
    return JSONResponse({"success": True, "data": session.to_dict()}, status_code=201)


@app.post("/api/diagnosis/ai-analysis")
def api_ai_analysis(request: Request, payload: Dict[str, Any]):
    _require_user(request)
    responses = payload.get("responses")
    symptom_data = payload.get("symptomData")
    if not responses and not symptom_data:
        raise ServiceError("Missing assessment data", 400)
    try:
        return triage_agent.get_weighted_ai_analysis(
            payload.get("selectedRegion") or "Unknown",
            responses=responses if isinstance(responses, dict) else None,
            symptom_data=symptom_data if isinstance(symptom_data, list) else None,
            red_flags=payload.get("redFlags"),
            condition_analysis=payload.get("conditionAnalysis"),
        )
    except triage_agent.AiAnalysisError as exc:
        raise ServiceError("AI analysis failed", 500) from exc


@app.get("/api/diagnosis/{session_id}")
def api_get_session(request: Request, session_id: str):
    user = _require_user(request)
    session = get_store().get_session(session_id)
    if session is None:
        raise not_found("Session")
    if not assessments.can_view_session(session, {"id": user.id, "role": user.role}):
        raise unauthorized()
    return {"success": True, "data": session.to_dict()}


@app.patch("/api/diagnosis/{session_id}")
def api_update_session(request: Request, session_id: str, payload: Dict[str, Any]):
    user = _require_staff(request)
    session = assessments.update_session(get_store(), session_id, payload, user)
    return {"success": True, "data": session.to_dict()}


@app.delete("/api/diagnosis/{session_id}")
def api_archive_session(request: Request, session_id: str):
    _require_staff(request)
    assessments.archive_session(get_store(), session_id)
    return {"success": True, "message": "Session archived"}


@app.get("/api/diagnosis/{session_id}/guided-test")
def api_guided_get(request: Request, session_id: str):
    user = _require_staff(request)
    return guided_tests.get_guided_test(get_store(), session_id, user.id)


@app.post("/api/diagnosis/{session_id}/guided-test")
def api_guided_record(request: Request, session_id: str, payload: Dict[str, Any]):
    user = _require_staff(request)
    return guided_tests.record_result(get_store(), session_id, payload, user.id)


@app.put("/api/diagnosis/{session_id}/guided-test")
def api_guided_complete(request: Request, session_id: str, payload: Dict[str, Any]):
    user = _require_staff(request)
    return guided_tests.complete(get_store(), session_id, payload, user.id)


# ---------------------------------------------------------------- assessment


@app.post("/api/assessment/submit")
def api_assessment_submit(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    result = assessments.submit_assessment(get_store(), user.id, payload)
    return JSONResponse(result, status_code=201)


def _require_patient(request: Request) -> User:
    return _require_user(request, ("PATIENT", "ADMIN"), 403)


@app.get("/api/assessment/wizard")
def api_wizard_state(request: Request):
    user = _require_patient(request)
    return {"success": True, "wizard": patient_app.get_wizard(user.id)}


@app.post("/api/assessment/start")
def api_wizard_start(request: Request, payload: Dict[str, Any]):
    user = _require_patient(request)
    return {"success": True, "wizard": patient_app.start_wizard(user.id, payload.get("region"))}


@app.post("/api/assessment/answer")
def api_wizard_answer(request: Request, payload: Dict[str, Any]):
    user = _require_patient(request)
    wizard = patient_app.answer_wizard(user.id, payload.get("questionId"), payload.get("answer"))
    return {"success": True, "wizard": wizard}


@app.post("/api/assessment/back")
def api_wizard_back(request: Request):
    user = _require_patient(request)
    return {"success": True, "wizard": patient_app.back_wizard(user.id)}


@app.post("/api/assessment/reset")
def api_wizard_reset(request: Request):
    user = _require_patient(request)
    patient_app.reset_wizard(user.id)
    return {"success": True, "wizard": patient_app.get_wizard(user.id)}


@app.post("/api/assessment/finish")
def api_wizard_finish(request: Request, payload: Dict[str, Any]):
    user = _require_patient(request)
    biodata = payload.get("biodata") if isinstance(payload.get("biodata"), dict) else None
    result = patient_app.finish_wizard(user.id, biodata)
    return JSONResponse(result, status_code=201)


# ---------------------------------------------------------------- notifications


@app.get("/api/notifications")
def api_notifications(request: Request, limit: int = 100):
    user = _require_user(request)
    store = get_store()
    items = notifications.list_for_user(store, user, limit=max(1, min(200, limit)))
    return {"success": True, "data": items, "unreadCount": sum(1 for n in items if not n["isRead"])}


@app.patch("/api/notifications/{notification_id}/read")
def api_notification_read(request: Request, notification_id: str):
    user = _require_user(request)
    try:
        note = notifications.mark_read(get_store(), notification_id, user)
    except PermissionError as exc:
        raise unauthorized() from exc
    if note is None:
        raise not_found("Notification")
    return {"success": True}


@app.post("/api/admin/notifications")
def api_admin_notify(request: Request, payload: Dict[str, Any]):
    _require_admin(request)
    note = admin.send_admin_notification(get_store(), payload)
    return JSONResponse({"success": True, "data": note.to_dict()}, status_code=201)


@app.delete("/api/admin/notifications/{notification_id}")
def api_admin_delete_notification(request: Request, notification_id: str):
    _require_admin(request)
    store = get_store()
    if store.get_notification(notification_id) is None:
        raise not_found("Notification")
    store.delete_notification(notification_id)
    return {"success": True}


# ---------------------------------------------------------------- admin


@app.get("/api/admin/users")
def api_admin_users(request: Request, role: Optional[str] = None):
    _require_admin(request)
    return {"success": True, "data": staff_app.get_users_data(role)}


@app.patch("/api/admin/users/{user_id}/role")
def api_admin_role(request: Request, user_id: str, payload: Dict[str, Any]):
    acting = _require_admin(request)
    user = admin.change_role(get_store(), user_id, payload.get("role"), acting.id)
    return {"success": True, "message": "User role updated", "data": user.to_dict()}


@app.patch("/api/admin/users/{user_id}/status")
def api_admin_status(request: Request, user_id: str, payload: Dict[str, Any]):
    acting = _require_admin(request)
    user = admin.set_active(get_store(), user_id, payload.get("isActive"), acting.id)
    return {"success": True, "data": user.to_dict()}


@app.get("/api/admin/cases")
def api_admin_cases(request: Request):
    _require_admin(request)
    return {"success": True, "data": assessments.new_case_queue(get_store())}


@app.post("/api/admin/cases/{session_id}/assign")
def api_admin_assign(request: Request, session_id: str, payload: Dict[str, Any]):
    _require_admin(request)
    session = assessments.assign_case(get_store(), session_id, str(payload.get("clinicianId") or ""))
    return {"success": True, "message": "Case assigned", "data": session.to_dict()}


@app.get("/api/admin/diagnostic-modules")
def api_modules_list(request: Request, region: Optional[str] = None, status: Optional[str] = None):
    _require_admin(request)
    return {"success": True, "data": admin.list_modules(get_store(), region=region, status=status)}


@app.post("/api/admin/diagnostic-modules")
def api_modules_create(request: Request, payload: Dict[str, Any]):
    user = _require_admin(request)
    module = admin.create_module(get_store(), user, payload)
    return JSONResponse({"success": True, "data": module.to_dict()}, status_code=201)


@app.get("/api/admin/diagnostic-modules/{module_id}")
def api_modules_get(request: Request, module_id: str):
    _require_admin(request)
    module = get_store().get_module(module_id)
    if module is None:
        raise not_found("Module")
    return {"success": True, "data": module.to_dict()}


@app.put("/api/admin/diagnostic-modules/{module_id}")
def api_modules_update(request: Request, module_id: str, payload: Dict[str, Any]):
    user = _require_admin(request)
    module = admin.update_module(get_store(), user, module_id, payload)
    return {"success": True, "data": module.to_dict()}


@app.delete("/api/admin/diagnostic-modules/{module_id}")
def api_modules_delete(request: Request, module_id: str):
    _require_admin(request)
    admin.delete_module(get_store(), module_id)
    return {"success": True, "message": "Module deleted"}


# ---------------------------------------------------------------- clinician


@app.get("/api/appointments")
def api_appointments(request: Request):
    user = _require_user(request)
    return {"success": True, "data": [a.to_dict() for a in care.list_appointments_for(get_store(), user)]}


@app.post("/api/appointments")
def api_appointment_create(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    appointment = care.create_appointment(get_store(), user, payload)
    return JSONResponse({"success": True, "data": appointment.to_dict()}, status_code=201)


@app.patch("/api/appointments/{appointment_id}")
def api_appointment_update(request: Request, appointment_id: str, payload: Dict[str, Any]):
    user = _require_clinician(request)
    appointment = care.update_appointment(get_store(), user, appointment_id, payload)
    return {"success": True, "data": appointment.to_dict()}


@app.delete("/api/appointments/{appointment_id}")
def api_appointment_delete(request: Request, appointment_id: str):
    user = _require_clinician(request)
    care.delete_appointment(get_store(), user, appointment_id)
    return {"success": True, "message": "Appointment deleted"}


@app.get("/api/treatment-plans")
def api_treatment_plans(request: Request, patientId: Optional[str] = None):
    user = _require_user(request)
    target = user.id if user.role == "PATIENT" else (patientId or "")
    if not target:
        raise ServiceError("Valid Patient ID is required", 400)
    return {"success": True, "data": [p.to_dict() for p in get_store().list_treatment_plans(target)]}


@app.post("/api/treatment-plans")
def api_treatment_plan_add(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    plan = care.add_treatment_activity(get_store(), user, payload)
    return {"success": True, "data": plan.to_dict()}


@app.post("/api/referrals")
def api_referral(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return care.send_referral(get_store(), user, payload)


@app.get("/api/clinician/settings")
def api_clinician_settings(request: Request):
    user = _require_clinician(request)
    return clinician_settings.get_settings(user)


@app.patch("/api/clinician/settings/professional")
def api_clinician_professional(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return clinician_settings.update_professional(get_store(), user, payload)


@app.patch("/api/clinician/settings/clinical")
def api_clinician_clinical(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return clinician_settings.update_clinical_preferences(get_store(), user, payload)


@app.patch("/api/clinician/settings/availability")
def api_clinician_availability(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return {"success": True, "availability": clinician_settings.update_availability(get_store(), user, payload)}


@app.patch("/api/clinician/settings/notifications")
def api_clinician_notifications(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return clinician_settings.update_notification_preferences(get_store(), user, payload)


@app.get("/api/clinician/settings/security")
def api_clinician_security(request: Request):
    user = _require_clinician(request)
    return clinician_settings.security_overview(user)


@app.patch("/api/clinician/settings/security")
def api_clinician_security_update(request: Request, payload: Dict[str, Any]):
    user = _require_clinician(request)
    return clinician_settings.update_security(user, payload)


# ---------------------------------------------------------------- documents and uploads


@app.get("/api/documents")
def api_documents(request: Request, patientId: Optional[str] = None):
    user = _require_user(request)
    return {"success": True, "data": [d.to_dict() for d in care.list_documents(get_store(), user, patientId)]}


@app.post("/api/documents")
def api_document_add(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    doc = care.add_document(get_store(), user, payload)
    return JSONResponse({"success": True, "data": doc.to_dict()}, status_code=201)


@app.delete("/api/documents/{file_id}")
def api_document_delete(request: Request, file_id: str):
    user = _require_user(request)
    care.delete_document(get_store(), user, file_id)
    return {"success": True, "message": "Document deleted"}


@app.post("/api/upload")
async def api_upload(
    request: Request,
    file: Optional[UploadFile] = File(None),
    preset: str = Form("medical_image"),
    sessionId: Optional[str] = Form(None),
):
    _require_user(request)
    if file is None:
        raise ServiceError("No file provided", 400)
    data = await file.read()
    try:
        result = media.save_upload(file.filename, file.content_type, data, session_id=sessionId, preset=preset)
    except media.UploadTooLarge as exc:
        raise ServiceError(str(exc), 413) from exc
    except ValueError as exc:
        raise ServiceError(str(exc), 400) from exc
    return {"success": True, "data": result}


# ---------------------------------------------------------------- messages


@app.get("/api/messages/{other_user_id}")
def api_conversation(request: Request, other_user_id: str):
    user = _require_user(request)
    return {"success": True, "data": [m.to_dict() for m in care.read_conversation(get_store(), user, other_user_id)]}


@app.post("/api/messages")
def api_send_message(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    message = care.send_message(get_store(), user, payload)
    return JSONResponse({"success": True, "data": message.to_dict()}, status_code=201)


# ---------------------------------------------------------------- profile and settings


@app.get("/api/patients/profile")
def api_profile(request: Request):
    user = _require_user(request)
    profile = get_store().get_patient_profile(user.id)
    return {"success": True, "data": user.to_dict(), "profile": profile.to_dict() if profile else None}


@app.patch("/api/patients/profile")
def api_profile_update(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    updated = accounts.update_profile(get_store(), user.id, payload)
    return {"success": True, "data": updated.to_dict()}


@app.put("/api/settings/password")
def api_change_password(request: Request, payload: Dict[str, Any]):
    user = _require_user(request)
    ok, message = credentials.change_password(
        user.id,
        str(payload.get("currentPassword") or ""),
        str(payload.get("newPassword") or ""),
        str(payload.get("confirmPassword") or ""),
    )
    if not ok:
        raise ServiceError(message, 400)
    return {"success": True, "message": message}


if __name__ == "__main__":
    import uvicorn

    def _detect_lan_ip() -> str:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.connect(("8.8.8.8", 80))
                return str(sock.getsockname()[0] or "").strip()
        except OSError:
            return ""

    host = str(os.getenv("HOST", "0.0.0.0") or "0.0.0.0").strip()
    port = int(os.getenv("PORT", "8000"))
    local_url = f"http://localhost:{port}/"
    lan_ip = _detect_lan_ip()
    print(f"[startup] Local URL:  {local_url}")
    if lan_ip:
        print(f"[startup] Local LAN:  http://{lan_ip}:{port}/")
    if not config.MISTRAL_API_KEY:
        print("[startup] MISTRAL_API_KEY not set; assessments use the local scoring fallback.")
    uvicorn.run(app, host=host, port=port)
