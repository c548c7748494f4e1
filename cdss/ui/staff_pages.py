import html
import json


def _api_js(url: str, method: str = "POST", payload: dict | None = None, then: str = "reload") -> str:
    js = f"cdssApi({json.dumps(url)}, {json.dumps(method)}, {json.dumps(payload or {}, ensure_ascii=False)}, {json.dumps(then)}); return false;"
    return html.escape(js, quote=True)


def _form_js(url: str, method: str, field_ids: dict, then: str = "reload", extra: dict | None = None) -> str:
    """Collect values from inputs by id, merge `extra`, and send them with cdssApi."""
    reads = "".join(
        f"p[{json.dumps(key)}]=(document.getElementById({json.dumps(el)})||{{}}).value||'';"
        for key, el in field_ids.items()
    )
    js = (
        "(function(){"
        f"var p={json.dumps(extra or {}, ensure_ascii=False)};{reads}"
        f"cdssApi({json.dumps(url)}, {json.dumps(method)}, p, {json.dumps(then)});"
        "})(); return false;"
    )
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
    icons = ctx.get("icons", {})
    sidebar_data = ctx["get_staff_sidebar_data"](user_id)
    if sidebar_data.get("role") == "Admin":
        nav_items = [
            (icons.get("dashboard", ""), "Admin Dashboard", "/admin/dashboard"),
            (icons.get("user", ""), "Users", "/admin/users"),
            (icons.get("card", ""), "Diagnostic Modules", "/admin/diagnostics"),
            (icons.get("calendar", ""), "Clinician View", "/clinician/dashboard"),
        ]
    else:
        nav_items = [
            (icons.get("dashboard", ""), "Clinician Dashboard", "/clinician/dashboard"),
            (icons.get("lock", ""), "Settings", "/clinician/settings"),
        ]
    nav_html = "".join(
        f"<div class='nav-item {'active' if href == current_page else ''}' onclick=\"{_nav_js(href)}\">{icon}{html.escape(label)}</div>"
        for icon, label, href in nav_items
    )
    return f"""
  <div class="sidebar">
    <div class="brand"><div class="brand-text">CDSS <span class="brand-accent">Portal</span></div></div>
    <div class="nav">{nav_html}</div>
    <div class="profile">
      <img src="{html.escape(sidebar_data.get('avatar') or '')}" />
      <div>
        <div class="name">{html.escape(sidebar_data.get('display_name') or 'Staff')}</div>
        <div class="role">{html.escape(sidebar_data.get('role') or '')}</div>
      </div>
    </div>
    <div class="logout" onclick="cdssLogout(); return false;">{icons.get('logout', '')} Log out</div>
  </div>
"""


def _layout(user_id: str, ctx: dict, current_page: str, main_html: str) -> str:
    return f"""
<div class="dash-page">
  {_render_sidebar(user_id, ctx, current_page)}
  <div class="main">{main_html}</div>
</div>
"""


# clinician


def _case_rows(rows: list, empty: str) -> str:
    out = ""
    for c in rows:
        out += f"""
<div class='case-row'>
  <div>{html.escape(c.get('patientName') or '')}</div>
  <div>{html.escape(c.get('region') or '')}</div>
  <div>{_risk_badge(c.get('riskLevel'))}</div>
  <div>{html.escape(str(c.get('temporalDiagnosis') or c.get('status') or '').replace('_', ' '))}</div>
  <div>{html.escape(c.get('date') or '')}</div>
  <div><button class='pill-btn' onclick="{_nav_js('/clinician/cases/' + c['id'])}">Open</button></div>
</div>
"""
    return out or f"<div class='case-row empty'>{html.escape(empty)}</div>"


def _render_clinician_dashboard(user_id: str, ctx: dict) -> str:
    data = ctx["get_clinician_data"](user_id)
    appts = "".join(
        f"<div class='pending-item'><div class='pending-time'>{html.escape(a['date'].replace('T', ' '))}</div>"
        f"<div class='pending-summary'>{html.escape(a['type'])} <span class='muted'>{html.escape(a['status'])}</span></div>"
        + (
            f"<button class='pill-btn' onclick=\"{_api_js('/api/appointments/' + a['id'], 'PATCH', {'status': 'Cancelled'})}\">Cancel</button>"
            if a["status"] == "Scheduled"
            else ""
        )
        + "</div>"
        for a in data["appointments"][:8]
    ) or "<div class='empty'>No appointments.</div>"
    notes = "".join(
        f"<div class='pending-item {'' if n.get('isRead') else 'unread'}'>"
        f"<div class='pending-summary'>{html.escape(n.get('title') or '')}<div class='muted'>{html.escape(n.get('description') or '')}</div></div>"
        + ("" if n.get("isRead") else f"<button class='pill-btn' onclick=\"{_api_js('/api/notifications/' + n['id'] + '/read', 'PATCH')}\">Read</button>")
        + "</div>"
        for n in data["notifications"]
    ) or "<div class='empty'>No notifications.</div>"
    head = "<div class='case-head'><div>Patient</div><div>Region</div><div>Risk</div><div>Impression</div><div>Date</div><div>Action</div></div>"
    return f"""
{_page_header('Clinician Dashboard', 'Assigned cases, review queue and upcoming appointments')}
<div class="card-row">
  <div class="card"><h4>Assigned Cases</h4><div class="big-num">{len(data['assigned'])}</div></div>
  <div class="card"><h4>Awaiting Review</h4><div class="big-num">{len(data['pending'])}</div></div>
  <div class="card"><h4>My Patients</h4><div class="big-num">{len(data['patients'])}</div><div class="muted">{data['unread']} unread notifications</div></div>
</div>
<div class="case-grid">
  <div>
    <div class='case-table card'><div class='card-title'>My Cases</div>{head}{_case_rows(data['assigned'], 'No assigned cases.')}</div>
    <div class='case-table card'><div class='card-title'>Pending Review</div>{head}{_case_rows(data['pending'], 'Queue is empty.')}</div>
  </div>
  <div class='side-stack'>
    <div class='card'><div class='card-title'>Appointments</div><div class='pending-list'>{appts}</div></div>
    <div class='card'><div class='card-title'>Notifications</div><div class='pending-list'>{notes}</div></div>
  </div>
</div>
"""


def _render_guided_panel(case_id: str, detail: dict) -> str:
    results = detail.get("guidedResults") or {}
    if results.get("isLocked"):
        refined = results.get("refinedDiagnosis") or {}
        tests = "".join(
            f"<li>{html.escape(t['testName'])}: <b>{html.escape(t['result'])}</b></li>" for t in results.get("tests") or []
        )
        return f"""
<div class='card'>
  <div class='card-title'>Guided Tests (locked)</div>
  <div class='care-pill'>{html.escape(refined.get('label') or '')}</div>
  <div class='care-focus'>Final suspected condition: {html.escape(str(refined.get('finalSuspectedCondition') or 'Undetermined'))}</div>
  <div class='muted'>Ruled out: {html.escape(', '.join(refined.get('ruledOutConditions') or []) or 'none')}</div>
  <ul class='care-bullets'>{tests}</ul>
</div>
"""
    state = detail.get("guidedState")
    url = f"/api/diagnosis/{case_id}/guided-test"
    if not state:
        return f"""
<div class='card'>
  <div class='card-title'>Guided Tests</div>
  <div class='muted'>Load the recommended special tests for this region.</div>
  <button class='pill-btn' onclick="{_api_js(url, 'GET')}">Start guided tests</button>
</div>
"""
    done = {t.get("testId"): t for t in state.get("completedTests") or [] if t.get("testId")}
    rows = ""
    for t in state.get("availableTests") or []:
        result = done.get(t["id"])
        if result:
            actions = f"<b>{html.escape(result['result'])}</b>"
        else:
            actions = "".join(
                f"<button class='pill-btn' onclick=\"{_api_js(url, 'POST', {'testId': t['id'], 'testName': t['name'], 'result': r})}\">{r.title()}</button>"
                for r in ("positive", "negative", "skipped")
            )
        rows += f"""
<div class='pending-item'>
  <div class='pending-summary'><b>{html.escape(t['name'])}</b><div class='muted'>{html.escape(t.get('instruction') or '')}</div></div>
  <div>{actions}</div>
</div>
"""
    adhoc = [t for t in state.get("completedTests") or [] if not t.get("testId")]
    adhoc_html = "".join(f"<li>{html.escape(t['testName'])}: {html.escape(t['result'])}</li>" for t in adhoc)
    likelihoods = "".join(
        f"<li>{html.escape(name)}: {int(cs.get('likelihood') or 0)}% <span class='muted'>{html.escape(cs.get('status') or '')}</span></li>"
        for name, cs in (state.get("conditionStates") or {}).items()
    )
    adhoc_js = _form_js(url, "POST", {"testName": "adhoc_name", "result": "adhoc_result", "notes": "adhoc_notes"})
    return f"""
<div class='card'>
  <div class='card-title'>Guided Tests</div>
  <div class='pending-list'>{rows or "<div class='empty'>No recommended tests for this region.</div>"}</div>
  <ul class='care-bullets'>{adhoc_html}</ul>
  <div class='inline-form'>
    <input id='adhoc_name' placeholder='Other test name' />
    <select id='adhoc_result'><option value='positive'>Positive</option><option value='negative'>Negative</option></select>
    <input id='adhoc_notes' placeholder='Notes' />
    <button class='pill-btn' onclick="{adhoc_js}">Record</button>
  </div>
  <div class='section-sub'>Condition likelihoods</div>
  <ul class='care-bullets'>{likelihoods}</ul>
  <button class='care-action care-action-primary' onclick="{_api_js(url, 'PUT', {'action': 'complete'})}">Complete and lock</button>
</div>
"""


def _render_case(user_id: str, ctx: dict, case_id: str) -> str:
    detail = ctx["get_case_detail"](case_id)
    session = detail["session"]
    patient = detail.get("patient") or {}
    analysis = detail["analysis"]
    row = detail["row"]

    answers = "".join(
        f"<div class='case-row'><div>{html.escape(str(s.get('question') or s.get('questionId') or ''))}</div>"
        f"<div><b>{html.escape(str(s.get('response') if s.get('response') is not None else s.get('answer', '')))}</b></div></div>"
        for s in detail["symptomData"]
    ) or "<div class='case-row empty'>No questionnaire answers.</div>"
    flags = "".join(f"<li>{html.escape(str(f))}</li>" for f in detail["redFlags"])
    flags_html = f"<div class='alert'><b>Red flags</b><ul>{flags}</ul></div>" if flags else ""
    indicators = "".join(f"<li>{html.escape(str(i))}</li>" for i in analysis.get("clinicalIndicators") or [])
    differentials = ", ".join(analysis.get("differentialDiagnoses") or []) or "None listed"
    cross = analysis.get("heuristicCrossCheck") or {}
    cross_html = (
        f"<div class='muted'>Heuristic cross-check: {html.escape(str(cross.get('conditionName')))} "
        f"({int(float(cross.get('confidence') or 0) * 100)}%)</div>"
        if cross.get("conditionName")
        else ""
    )
    review = session.get("clinician_review") or {}
    review_js = html.escape(
        "(function(){"
        "var d=document.getElementById('review_dx').value||'';"
        "var n=document.getElementById('review_notes').value||'';"
        f"cdssApi({json.dumps('/api/diagnosis/' + case_id)}, 'PATCH', {{clinicianReview:{{confirmedDiagnosis:d, notes:n}}}}, 'reload');"
        "})(); return false;",
        quote=True,
    )
    patient_id = session["patient_id"]
    plan_js = html.escape(
        "(function(){"
        "var g=function(id){return (document.getElementById(id)||{}).value||'';};"
        f"cdssApi('/api/treatment-plans','POST',{{patientId:{json.dumps(patient_id)},conditionName:g('plan_condition'),"
        "activity:{date:g('plan_date'),time:g('plan_time'),goal:g('plan_goal'),activeTreatment:g('plan_treatment'),homeExercise:g('plan_home')}},'reload');"
        "})(); return false;",
        quote=True,
    )
    appt_js = _form_js(
        "/api/appointments",
        "POST",
        {"date": "appt_date", "time": "appt_time", "type": "appt_type", "location": "appt_location"},
        extra={"patientId": patient_id},
    )
    referral_js = _form_js(
        "/api/referrals", "POST", {"specialty": "ref_specialty", "reason": "ref_reason"}, extra={"patientId": patient_id}
    )
    message_js = _form_js(
        "/api/messages", "POST", {"content": "msg_content"}, extra={"receiverId": patient_id}
    )
    docs = "".join(
        f"<li><a href='{html.escape(d['file_url'])}' target='_blank'>{html.escape(d['file_name'])}</a> "
        f"<span class='muted'>{html.escape(d.get('category') or '')}</span></li>"
        for d in detail["documents"]
    ) or "<li class='muted'>No documents.</li>"
    media = "".join(
        f"<a href='{html.escape(u)}' target='_blank'><img class='thumb' src='{html.escape(u)}' /></a>" for u in session.get("media_urls") or []
    )
    biodata = session.get("biodata") or {}
    bio_html = " | ".join(
        html.escape(f"{k}: {v}") for k, v in biodata.items() if v and k in ("sex", "ageRange", "occupation", "education")
    )

    main = f"""
{_page_header(f"Case: {patient.get('full_name') or 'Unknown Patient'}", f"{row['region']} assessment, {row['date']}")}
<div class='toolbar-item'>Status: {html.escape(session['status'].replace('_', ' '))}</div> {_risk_badge(row['riskLevel'])}
{flags_html}
<div class='case-grid'>
  <div>
    <div class='card'>
      <div class='card-title'>Provisional Analysis ({html.escape(str(analysis.get('source') or ''))})</div>
      <div class='care-focus'>{html.escape(str(analysis.get('temporalDiagnosis') or 'No impression'))}
        <span class='muted'>confidence {html.escape(str(analysis.get('confidenceScore') or 0))}%</span></div>
      <div class='muted'>Differentials: {html.escape(differentials)}</div>
      {cross_html}
      <ul class='care-bullets'>{indicators}</ul>
      <div class='muted'>{bio_html}</div>
    </div>
    <div class='case-table card'><div class='card-title'>Questionnaire Answers</div>{answers}</div>
    {_render_guided_panel(case_id, detail)}
    <div class='card'>
      <div class='card-title'>Clinician Review</div>
      <input id='review_dx' placeholder='Confirmed diagnosis' value="{html.escape(str(review.get('confirmedDiagnosis') or ''))}" />
      <textarea id='review_notes' class='dc-textarea' placeholder='Notes'>{html.escape(str(review.get('notes') or ''))}</textarea>
      <button class='care-action care-action-primary' onclick="{review_js}">Save review</button>
    </div>
  </div>
  <div class='side-stack'>
    <div class='card'><div class='card-title'>Media and Documents</div>{media}<ul class='care-bullets'>{docs}</ul></div>
    <div class='card inline-form'>
      <div class='card-title'>Treatment Activity</div>
      <input id='plan_condition' placeholder='Condition' value="{html.escape(str(review.get('confirmedDiagnosis') or analysis.get('temporalDiagnosis') or ''))}" />
      <input id='plan_date' type='date' /><input id='plan_time' type='time' />
      <input id='plan_goal' placeholder='Goal' /><input id='plan_treatment' placeholder='Active treatment' />
      <input id='plan_home' placeholder='Home exercise' />
      <button class='pill-btn' onclick="{plan_js}">Add to plan</button>
    </div>
    <div class='card inline-form'>
      <div class='card-title'>Schedule Appointment</div>
      <input id='appt_date' type='date' /><input id='appt_time' type='time' />
      <input id='appt_type' placeholder='General Consultation' /><input id='appt_location' placeholder='Virtual Session' />
      <button class='pill-btn' onclick="{appt_js}">Schedule</button>
    </div>
    <div class='card inline-form'>
      <div class='card-title'>Referral</div>
      <input id='ref_specialty' placeholder='Specialty' /><input id='ref_reason' placeholder='Reason' />
      <button class='pill-btn' onclick="{referral_js}">Send referral</button>
    </div>
    <div class='card inline-form'>
      <div class='card-title'>Message Patient</div>
      <textarea id='msg_content' class='dc-textarea'></textarea>
      <button class='pill-btn' onclick="{message_js}">Send</button>
    </div>
  </div>
</div>
"""
    return main


def _render_clinician_settings(user_id: str, ctx: dict) -> str:
    settings = ctx["get_clinician_settings"](user_id)
    pro = settings["professional"]
    prefs = settings["notifications"]
    professional_js = html.escape(
        "(function(){"
        "var g=function(id){return (document.getElementById(id)||{}).value||'';};"
        "var specs=g('set_specs').split(',').map(function(s){return s.trim();}).filter(Boolean);"
        "cdssApi('/api/clinician/settings/professional','PATCH',{licenseNumber:g('set_license'),licenseBody:g('set_body'),"
        "experienceYears:Number(g('set_years')||0),specializations:specs,primaryPracticeArea:g('set_area')},'reload');"
        "})(); return false;",
        quote=True,
    )
    prefs_js = html.escape(
        "(function(){"
        "var c=function(id){return !!(document.getElementById(id)||{}).checked;};"
        "cdssApi('/api/clinician/settings/notifications','PATCH',"
        f"{{email:c('set_email'),inApp:c('set_inapp'),events:{json.dumps(prefs.get('events') or [])}}},'reload');"
        "})(); return false;",
        quote=True,
    )
    security_js = _form_js(
        "/api/clinician/settings/security",
        "PATCH",
        {"currentPassword": "set_pw_current", "newPassword": "set_pw_new", "confirmPassword": "set_pw_confirm"},
    )

    def val(v) -> str:
        return html.escape(str(v if v is not None else ""), quote=True)

    return f"""
{_page_header('Settings', 'Professional details, notifications and account security')}
<div class="case-grid">
  <div class="card">
    <div class="card-title">Professional Details</div>
    <label>License number<input id="set_license" value="{val(pro.get('licenseNumber'))}" /></label>
    <label>Issuing body<input id="set_body" value="{val(pro.get('licenseBody'))}" /></label>
    <label>Years of experience<input id="set_years" type="number" min="0" value="{val(pro.get('experienceYears'))}" /></label>
    <label>Specializations (comma separated)<input id="set_specs" value="{val(', '.join(pro.get('specializations') or []))}" /></label>
    <label>Primary practice area<input id="set_area" value="{val(pro.get('primaryPracticeArea'))}" /></label>
    <button class="pill-btn" onclick="{professional_js}">Save details</button>
  </div>
  <div class="side-stack">
    <div class="card">
      <div class="card-title">Notifications</div>
      <label><input id="set_email" type="checkbox" {'checked' if prefs.get('email') else ''} /> Email alerts</label>
      <label><input id="set_inapp" type="checkbox" {'checked' if prefs.get('inApp') else ''} /> In-app alerts</label>
      <button class="pill-btn" onclick="{prefs_js}">Save preferences</button>
    </div>
    <div class="card">
      <div class="card-title">Security</div>
      <div class="muted">Last login: {val(settings.get('lastLogin') or 'never')}</div>
      <label>Current password<input id="set_pw_current" type="password" /></label>
      <label>New password<input id="set_pw_new" type="password" /></label>
      <label>Confirm password<input id="set_pw_confirm" type="password" /></label>
      <button class="pill-btn" onclick="{security_js}">Change password</button>
    </div>
  </div>
</div>
"""


def render_clinician_page(user_id: str, ctx: dict, case_id: str | None = None, page: str = "dashboard") -> str:
    if page == "settings":
        return _layout(user_id, ctx, "/clinician/settings", _render_clinician_settings(user_id, ctx))
    if case_id:
        return _layout(user_id, ctx, "/clinician/dashboard", _render_case(user_id, ctx, case_id))
    return _layout(user_id, ctx, "/clinician/dashboard", _render_clinician_dashboard(user_id, ctx))


# admin


def _render_admin_dashboard(user_id: str, ctx: dict) -> str:
    data = ctx["get_admin_data"]()
    counts = data["counts"]
    users = counts.get("users") or {}
    sessions = counts.get("sessions") or {}
    options = "".join(
        f"<option value='{html.escape(c['id'])}'>Dr. {html.escape(c['full_name'])}</option>" for c in data["clinicians"]
    )
    queue = ""
    for c in data["queue"]:
        select_id = f"assign_{c['id']}"
        assign_js = _form_js(f"/api/admin/cases/{c['id']}/assign", "POST", {"clinicianId": select_id})
        queue += f"""
<div class='case-row'>
  <div>{html.escape(c['patientName'])}</div>
  <div>{html.escape(c.get('body_region') or '')}</div>
  <div>{_risk_badge(c['riskLevel'])}</div>
  <div>{html.escape(str(c.get('created_at') or '')[:16].replace('T', ' '))}</div>
  <div><select id='{select_id}'>{options}</select></div>
  <div><button class='pill-btn' onclick="{assign_js}">Assign</button></div>
</div>
"""
    if not queue:
        queue = "<div class='case-row empty'>No cases awaiting assignment.</div>"
    broadcast_js = _form_js(
        "/api/admin/notifications",
        "POST",
        {"title": "bc_title", "description": "bc_description", "targetRole": "bc_target", "type": "bc_type"},
    )
    recent = "".join(
        f"<div class='pending-item'><div class='pending-summary'>{html.escape(n['title'])} "
        f"<span class='muted'>to {html.escape(str(n.get('target_role')))}</span></div>"
        f"<button class='pill-btn' onclick=\"{_api_js('/api/admin/notifications/' + n['id'], 'DELETE')}\">Delete</button></div>"
        for n in data["broadcasts"]
    ) or "<div class='empty'>No broadcasts sent.</div>"
    return f"""
{_page_header('Admin Dashboard', 'System overview, case assignment and announcements')}
<div class="card-row">
  <div class="card"><h4>Patients</h4><div class="big-num">{users.get('PATIENT', 0)}</div></div>
  <div class="card"><h4>Clinicians</h4><div class="big-num">{users.get('CLINICIAN', 0)}</div></div>
  <div class="card"><h4>Pending Review</h4><div class="big-num">{sessions.get('pending_review', 0)}</div>
    <div class="muted">{sessions.get('assigned', 0)} assigned, {sessions.get('reviewed', 0)} reviewed</div></div>
</div>
<div class='case-grid'>
  <div class='case-table card'>
    <div class='card-title'>New Case Queue</div>
    <div class='case-head'><div>Patient</div><div>Region</div><div>Risk</div><div>Submitted</div><div>Clinician</div><div>Action</div></div>
    {queue}
  </div>
  <div class='side-stack'>
    <div class='card inline-form'>
      <div class='card-title'>Broadcast</div>
      <input id='bc_title' placeholder='Title' />
      <textarea id='bc_description' class='dc-textarea' placeholder='Message'></textarea>
      <select id='bc_target'><option>ALL</option><option>PATIENT</option><option>CLINICIAN</option><option>ADMIN</option></select>
      <select id='bc_type'><option>SYSTEM</option><option>ALERT</option><option>UPDATE</option></select>
      <button class='pill-btn' onclick="{broadcast_js}">Send</button>
    </div>
    <div class='card'><div class='card-title'>Recent Broadcasts</div><div class='pending-list'>{recent}</div></div>
  </div>
</div>
"""


def _render_users(user_id: str, ctx: dict, role_filter: str | None) -> str:
    users = ctx["get_users_data"](role_filter)
    chips = "".join(
        f"<button class='chip {'active' if (role_filter or 'ALL') == r else ''}' onclick=\"{_nav_js('/admin/users?role=' + r)}\">{r}</button>"
        for r in ("ALL", "PATIENT", "CLINICIAN", "ADMIN")
    )
    rows = ""
    for u in users:
        role_sel = f"role_{u['id']}"
        options = "".join(
            f"<option {'selected' if u['role'] == r else ''}>{r}</option>" for r in ("PATIENT", "CLINICIAN", "ADMIN")
        )
        status_btn = ""
        if u["id"] != user_id:
            label = "Deactivate" if u["is_active"] else "Activate"
            status_btn = (
                f"<button class='pill-btn' onclick=\"{_api_js('/api/admin/users/' + u['id'] + '/status', 'PATCH', {'isActive': not u['is_active']})}\">{label}</button>"
            )
        rows += f"""
<div class='case-row'>
  <div>{html.escape(u['full_name'])}</div>
  <div class='mono'>{html.escape(u['email'])}</div>
  <div><select id='{role_sel}'>{options}</select>
    <button class='pill-btn' onclick="{_form_js('/api/admin/users/' + u['id'] + '/role', 'PATCH', {'role': role_sel})}">Save</button></div>
  <div>{'Active' if u['is_active'] else 'Inactive'}</div>
  <div>{html.escape(str(u.get('last_login') or 'never')[:16].replace('T', ' '))}</div>
  <div>{status_btn}</div>
</div>
"""
    return f"""
{_page_header('Users', 'Manage roles and account status')}
<div class='staff-toolbar'><div class='toolbar-filters'>{chips}</div></div>
<div class='case-table card'>
  <div class='case-head'><div>Name</div><div>Email</div><div>Role</div><div>Status</div><div>Last login</div><div>Action</div></div>
  {rows or "<div class='case-row empty'>No users.</div>"}
</div>
"""


def _render_modules(user_id: str, ctx: dict, region: str | None, status: str | None) -> str:
    data = ctx["get_modules_data"](region, status)
    rows = ""
    for m in data["modules"]:
        next_status = {"Draft": "Review", "Review": "Active", "Active": "Archived", "Archived": "Draft"}.get(m["status"], "Draft")
        delete_btn = (
            ""
            if m.get("is_default")
            else f"<button class='pill-btn' onclick=\"{_api_js('/api/admin/diagnostic-modules/' + m['id'], 'DELETE')}\">Delete</button>"
        )
        rows += f"""
<div class='case-row'>
  <div>{html.escape(m['title'])}{' <span class="care-pill">default</span>' if m.get('is_default') else ''}</div>
  <div>{html.escape(m['region'])}</div>
  <div>{html.escape(m['status'])}</div>
  <div>v{int(m.get('version') or 1)} / {int(m.get('questionCount') or 0)} questions</div>
  <div><button class='pill-btn' onclick="{_api_js('/api/admin/diagnostic-modules/' + m['id'], 'PUT', {'status': next_status})}">Move to {next_status}</button></div>
  <div>{delete_btn}</div>
</div>
"""
    regions = "".join(f"<option>{r}</option>" for r in ("Lumbar", "Cervical", "Shoulder", "Ankle", "Knee", "Elbow", "Hip", "Wrist", "General"))
    create_js = html.escape(
        "(function(){"
        "var g=function(id){return (document.getElementById(id)||{}).value||'';};"
        "var q=[]; var raw=g('mod_questions').trim();"
        "if(raw){try{q=JSON.parse(raw);}catch(e){cdssToast('Questions must be valid JSON'); return;}}"
        "cdssApi('/api/admin/diagnostic-modules','POST',{title:g('mod_title'),region:g('mod_region'),description:g('mod_description'),questions:q},'reload');"
        "})(); return false;",
        quote=True,
    )
    filter_chips = "".join(
        f"<button class='chip {'active' if data['status'] == s else ''}' onclick=\"{_nav_js('/admin/diagnostics?status=' + s)}\">{s}</button>"
        for s in ("ALL", "Draft", "Review", "Active", "Archived")
    )
    return f"""
{_page_header('Diagnostic Modules', 'Questionnaires used by the patient assessment wizard')}
<div class='staff-toolbar'><div class='toolbar-filters'>{filter_chips}</div></div>
<div class='case-grid'>
  <div class='case-table card'>
    <div class='case-head'><div>Title</div><div>Region</div><div>Status</div><div>Version</div><div>Workflow</div><div>Action</div></div>
    {rows or "<div class='case-row empty'>No modules match.</div>"}
  </div>
  <div class='side-stack'>
    <div class='card inline-form'>
      <div class='card-title'>New Module</div>
      <input id='mod_title' placeholder='Title' />
      <select id='mod_region'>{regions}</select>
      <textarea id='mod_description' class='dc-textarea' placeholder='Description'></textarea>
      <textarea id='mod_questions' class='dc-textarea' placeholder='Questions as JSON list (optional)'></textarea>
      <button class='pill-btn' onclick="{create_js}">Create draft</button>
    </div>
  </div>
</div>
"""


def render_admin_page(page: str, user_id: str, ctx: dict, filters: dict | None = None) -> str:
    filters = filters or {}
    if page == "users":
        main = _render_users(user_id, ctx, filters.get("role"))
    elif page == "diagnostics":
        main = _render_modules(user_id, ctx, filters.get("region"), filters.get("status"))
    else:
        main = _render_admin_dashboard(user_id, ctx)
    return _layout(user_id, ctx, f"/admin/{page}", main)
