import html
import json
import math


def _api_js(url: str, method: str = "POST", payload: dict | None = None, then: str = "reload") -> str:
    js = f"cdssApi({json.dumps(url)}, {json.dumps(method)}, {json.dumps(payload or {}, ensure_ascii=False)}, {json.dumps(then)}); return false;"
    return html.escape(js, quote=True)


def _nav_js(href: str) -> str:
    return html.escape(f"window.location.href={json.dumps(href)}; return false;", quote=True)


def _page_header(title: str, subtitle: str) -> str:
    return (
        f"<div class='header-title'>{html.escape(title)}</div>"
        f"<div class='header-sub'>{html.escape(subtitle)}</div>"
    )


def _risk_badge(level: str) -> str:
    level = str(level or "Low")
    return f"<span class='risk-badge risk-{html.escape(level.lower())}'>{html.escape(level)}</span>"


def _render_sidebar(user_id: str, ctx: dict, current_page: str) -> str:
    icons = ctx["icons"]
    sidebar_data = ctx["get_patient_sidebar_data"](user_id)
    nav_items = [
        (icons.get("dashboard", ""), "Dashboard", "dashboard"),
        (icons.get("card", ""), "New Assessment", "assessment"),
        (icons.get("inbox", ""), "Documents", "documents"),
        (icons.get("chat", ""), "Messages", "messages"),
    ]
    nav_html = "".join(
        f"<div class=\"nav-item {'active' if key == current_page else ''}\" onclick=\"{_nav_js('/patient/' + key)}\">{icon}{label}</div>"
        for icon, label, key in nav_items
    )
    return f"""
  <div class="sidebar">
    <div class="brand"><div class="brand-text">CDSS <span class="brand-accent">Portal</span></div></div>
    <div class="nav">{nav_html}</div>
    <div class="profile">
      <img src="{html.escape(sidebar_data.get('avatar') or '')}" />
      <div>
        <div class="name">{html.escape(sidebar_data.get('display_name') or '')}</div>
        <div class="role">{html.escape(sidebar_data.get('role') or '')}</div>
      </div>
    </div>
    <div class="logout" onclick="cdssLogout(); return false;">{icons.get('logout', '')} Log out</div>
  </div>
"""


def _render_dashboard(user_id: str, ctx: dict) -> str:
    data = ctx["get_patient_data"](user_id)
    user = data["user"]
    sessions = data["sessions"]
    appointments = [a for a in data["appointments"] if a.get("status") == "Scheduled"]
    next_appt = appointments[0] if appointments else None
    clinician = data.get("clinician")

    session_html = ""
    for s in sessions:
        analysis = s.get("analysis") or {}
        guidance = html.escape(str(analysis.get("guidance") or ""))
        final = s.get("finalDiagnosis")
        final_html = f"<div class='care-focus'>Clinician diagnosis: {html.escape(str(final))}</div>" if final else ""
        temporal = s.get("temporal") or {}
        temporal_html = ""
        primary = temporal.get("primaryDiagnosis") or {}
        if primary.get("conditionName"):
            temporal_html = f"<div class='care-focus'>Temporal pattern: {html.escape(str(primary['conditionName']))}</div>"
        disclaimer = analysis.get("disclaimer")
        session_html += f"""
<div class='plan-item'>
  <div class='care-date-row'><span class='care-pill'>{html.escape(s['region'])}</span><span>{html.escape(s['date'])}</span></div>
  <div class='care-title'>{html.escape(analysis.get('summary') or 'Assessment recorded')}</div>
  <div>{_risk_badge(analysis.get('riskLevel'))} <span class='muted'>Status: {html.escape(s['status'].replace('_', ' '))}</span></div>
  {final_html}{temporal_html}
  <div class='care-sub'>{guidance}</div>
  {f"<div class='disclaimer'>{html.escape(disclaimer)}</div>" if disclaimer else ''}
</div>
"""
    if not session_html:
        session_html = f"<div class='empty'>No assessments yet. <span class='link' onclick=\"{_nav_js('/patient/assessment')}\">Start one</span>.</div>"

    plan = data.get("plan")
    if plan:
        progress = int(plan.get("progress") or 0)
        r = 26
        c = 2 * math.pi * r
        dash = c * progress / 100.0
        activities = "".join(
            f"<li><b>{html.escape(str(a.get('goal') or 'Session'))}</b> "
            f"{html.escape(str(a.get('activeTreatment') or ''))} "
            f"<span class='muted'>{html.escape(str(a.get('homeExercise') or ''))}</span></li>"
            for a in (plan.get("activities") or [])[-5:]
        )
        plan_html = f"""
<div class='card'>
  <h4>Treatment Plan: {html.escape(plan.get('condition_name') or '')}</h4>
  <svg class="progress-ring" viewBox="0 0 60 60">
    <circle cx="30" cy="30" r="{r}" stroke="#DDE4EE" stroke-width="8" fill="none" />
    <circle cx="30" cy="30" r="{r}" stroke="#6AB8C4" stroke-width="8" fill="none"
            stroke-dasharray="{dash} {c - dash}" stroke-linecap="round" transform="rotate(-90 30 30)" />
  </svg>
  <div>{progress}% complete, by {html.escape(plan.get('clinician_name') or '')}</div>
  <ul class='care-bullets'>{activities}</ul>
</div>
"""
    else:
        plan_html = "<div class='card'><h4>Treatment Plan</h4><div class='empty'>No active plan.</div></div>"

    notes_html = ""
    for n in data["notifications"]:
        read_btn = "" if n.get("isRead") else (
            f"<button class='pill-btn' onclick=\"{_api_js('/api/notifications/' + n['id'] + '/read', 'PATCH')}\">Mark read</button>"
        )
        link = n.get("link")
        title = html.escape(n.get("title") or "")
        if link:
            title = f"<span class='link' onclick=\"{_nav_js(link)}\">{title}</span>"
        notes_html += f"""
<div class='pending-item {'' if n.get('isRead') else 'unread'}'>
  <div class='pending-time'>{html.escape(ctx['format_short_date'](n.get('created_at')))}</div>
  <div class='pending-summary'>{title}<div class='muted'>{html.escape(n.get('description') or '')}</div></div>
  {read_btn}
</div>
"""
    if not notes_html:
        notes_html = "<div class='empty'>No notifications.</div>"

    appt_html = "".join(
        f"<li>{html.escape(a['date'].replace('T', ' '))}: {html.escape(a['type'])} with {html.escape(a['clinician_name'])} "
        f"<span class='muted'>({html.escape(a['location'])})</span></li>"
        for a in appointments[:5]
    ) or "<li class='muted'>No upcoming appointments.</li>"

    return f"""
{_page_header(f"Welcome, {user.get('first_name', '')}", 'Your assessments, care plan and updates')}
<div class="card-row">
  <div class="card">
    <h4>Assessments</h4>
    <div class="big-num">{len(sessions)}</div>
    <div class="link" onclick="{_nav_js('/patient/assessment')}">Start a new assessment</div>
  </div>
  <div class="card">
    <h4>Next Appointment</h4>
    <div>{html.escape(next_appt['date'].replace('T', ' ')) if next_appt else 'None scheduled'}</div>
    <div class="muted">{html.escape(next_appt['type']) if next_appt else ''}</div>
  </div>
  <div class="card">
    <h4>Your Clinician</h4>
    <div>{html.escape('Dr. ' + clinician['full_name']) if clinician else 'Not yet assigned'}</div>
    <div class="muted">{data['unread']} unread notifications</div>
  </div>
</div>
<div class="split">
  <div>
    <div class="section-title">Assessment History</div>
    <div class="care-grid">{session_html}</div>
  </div>
  <div>
    {plan_html}
    <div class="card"><h4>Appointments</h4><ul class='care-bullets'>{appt_html}</ul></div>
    <div class="card"><h4>Notifications</h4><div class='pending-list'>{notes_html}</div></div>
  </div>
</div>
"""


def _render_assessment(user_id: str, ctx: dict) -> str:
    wizard = ctx["get_wizard"](user_id)
    if not wizard["active"]:
        regions = "".join(
            f"<div class='quick-card region-card' onclick=\"{_api_js('/api/assessment/start', 'POST', {'region': r['id']})}\">"
            f"<div class='q-title'>{html.escape(r['name'])}</div><div class='muted'>Start questionnaire</div></div>"
            for r in wizard["regions"]
        )
        return f"""
{_page_header('New Assessment', 'Where do you feel pain? Choose the body region to begin.')}
<div class="quick-row">{regions}</div>
"""

    answered = wizard["answeredCount"]
    total = max(1, wizard["totalQuestions"])
    pct = min(100, int(round(answered * 100.0 / total)))
    flags_html = ""
    if wizard["redFlags"]:
        flags_html = (
            "<div class='alert'>Some of your answers need prompt attention. "
            "If symptoms are severe or worsening, seek urgent care.</div>"
        )
    back_btn = (
        f"<button class='dc-btn' onclick=\"{_api_js('/api/assessment/back')}\">Back</button>" if wizard["canGoBack"] else ""
    )
    q = wizard.get("currentQuestion")
    if q and not wizard["isComplete"]:
        answers = "".join(
            f"<button class='dc-radio-pill answer-btn' onclick=\"{_api_js('/api/assessment/answer', 'POST', {'questionId': q['id'], 'answer': (a.get('value') if isinstance(a, dict) else a)})}\">"
            f"{html.escape(str(a.get('value') if isinstance(a, dict) else a))}</button>"
            for a in q.get("answers") or []
        )
        body = f"""
<div class='section-title'>{html.escape(str(q.get('question') or ''))}</div>
<div class='dc-content answer-list'>{answers}</div>
<div class='dc-actions'>{back_btn}
  <button class='dc-btn' onclick="{_api_js('/api/assessment/finish', 'POST', {}, '/patient/dashboard') if answered else 'return false;'}" {'' if answered else 'disabled'}>Finish early</button>
</div>
"""
    else:
        body = f"""
<div class='section-title'>All done. Confirm your details</div>
<div class='section-sub'>These details help your clinician interpret the results.</div>
<div class='dc-content' id='biodata_form'>
  <input id='bio_fullName' class='dc-input' placeholder='Full name' />
  <select id='bio_sex' class='dc-input'><option value=''>Sex</option><option>Male</option><option>Female</option><option>Other</option></select>
  <select id='bio_ageRange' class='dc-input'><option value=''>Age range</option><option>18-30</option><option>31-45</option><option>46-60</option><option>60+</option></select>
  <input id='bio_occupation' class='dc-input' placeholder='Occupation' />
  <textarea id='bio_notes' class='dc-textarea' placeholder='Anything else your clinician should know?'></textarea>
</div>
<div class='dc-actions'>{back_btn}
  <button class='dc-btn dc-next' onclick="cdssFinishAssessment(); return false;">Submit assessment</button>
</div>
"""
    return f"""
{_page_header(f"{wizard['region']} Assessment", wizard.get('title') or '')}
<div class='check-in-card'>
  <div class='daily-progress'>
    <div class='progress-bar'><div style='width:{pct}%'></div></div>
    <div class='progress-pct'>{answered}/{wizard['totalQuestions']}</div>
  </div>
  {flags_html}
  {body}
  <div class='dc-save' onclick="{_api_js('/api/assessment/reset')}">Start over</div>
</div>
"""


def _render_documents(user_id: str, ctx: dict) -> str:
    data = ctx["get_documents_data"](user_id)
    rows = ""
    for d in data["documents"]:
        rows += f"""
<div class='case-row'>
  <div><a href="{html.escape(d['file_url'])}" target="_blank">{html.escape(d['file_name'])}</a></div>
  <div>{html.escape(d.get('category') or 'Other')}</div>
  <div class='mono'>{html.escape(d.get('case_file_id') or '')}</div>
  <div>{html.escape(ctx['format_short_date'](d.get('created_at')))}</div>
  <div><button class='pill-btn' onclick="{_api_js('/api/documents/' + d['id'], 'DELETE')}">Delete</button></div>
</div>
"""
    if not rows:
        rows = "<div class='case-row empty'>No documents uploaded.</div>"
    categories = "".join(f"<option>{c}</option>" for c in ("Lab Report", "Imaging", "Prescription", "Clinical Note", "Other"))
    return f"""
{_page_header('Documents', 'Upload imaging, lab reports and prescriptions for your care team')}
<div class='card upload-card'>
  <input id='doc_file' type='file' accept='image/*,application/pdf' />
  <select id='doc_category'>{categories}</select>
  <button class='pill-btn' onclick="cdssUploadDocument('doc_file', 'doc_category', ''); return false;">Upload</button>
</div>
<div class='case-table card'>
  <div class='case-head'><div>File</div><div>Category</div><div>Case File</div><div>Date</div><div>Action</div></div>
  {rows}
</div>
"""


def _render_messages(user_id: str, ctx: dict) -> str:
    data = ctx["get_messages_data"](user_id)
    clinician = data.get("clinician")
    if not clinician:
        return (
            _page_header("Messages", "Chat with your clinician")
            + "<div class='empty'>A clinician has not been assigned yet. You will be notified once your case is picked up.</div>"
        )
    bubbles = "".join(
        f"<div class=\"bubble {'user' if m['sender_id'] == user_id else 'bot'}\">{html.escape(m['content'])}"
        f"<div class='bubble-time'>{html.escape(str(m.get('created_at') or '')[11:16])}</div></div>"
        for m in data["messages"]
    ) or "<div class='chat-empty'><div class='chat-empty-sub'>No messages yet.</div></div>"
    send_js = html.escape(
        "var el=document.getElementById('msg_input'); if(!el.value.trim()) return false;"
        f"cdssApi('/api/messages','POST',{{receiverId:{json.dumps(clinician['id'])},content:el.value}},'reload'); return false;",
        quote=True,
    )
    return f"""
{_page_header('Messages', 'Conversation with Dr. ' + clinician['full_name'])}
<div class='chat-panel'>
  <div class='chat-bubbles'>{bubbles}</div>
  <div class='chat-input-bar'>
    <input id='msg_input' type='text' placeholder='Type a message' />
    <button class='chat-send' onclick="{send_js}">Send</button>
  </div>
</div>
"""


def render_patient_page(page: str, user_id: str, ctx: dict) -> str:
    renderers = {
        "dashboard": _render_dashboard,
        "assessment": _render_assessment,
        "documents": _render_documents,
        "messages": _render_messages,
    }
    render = renderers.get(page, _render_dashboard)
    return f"""
<div class="dash-page">
  {_render_sidebar(user_id, ctx, page)}
  <div class="main">{render(user_id, ctx)}</div>
</div>
"""
