"""
Server-rendered HTML for the browser-facing views.

Pages are built with FastMCP's page kit (fastmcp.utilities.ui), the same
shell, logo and style blocks FastMCP renders its own consent and error pages
with. Every value that comes from a client registration or a request is
escaped; URIs are only ever rendered as link targets, never executed.
"""

import html

from fastmcp.utilities.ui import (
    BUTTON_STYLES,
    DETAIL_BOX_STYLES,
    INFO_BOX_STYLES,
    create_logo,
    create_page,
)

from src.approval import ApprovalController, ApprovalState

PLACEHOLDER = "<div></div>"

# The approval page has two inline handlers: Cancel closes the window and
# submitting disables Authorize. The form posts to this origin, which then
# redirects to the upstream provider or the client.
CSP_POLICY = (
    "default-src 'none'; style-src 'unsafe-inline'; script-src 'unsafe-inline'; "
    "img-src https: data:; base-uri 'none'; form-action 'self' https: http:"
)

_PAGE_STYLES = """
    .spinner {
        margin: 6rem auto;
        width: 3rem;
        height: 3rem;
        border-radius: 50%;
        border-top: 2px solid #a855f7;
        border-bottom: 2px solid #a855f7;
        animation: spin 1s linear infinite;
    }

    @keyframes spin {
        to { transform: rotate(360deg); }
    }

    .field {
        text-align: left;
        margin-bottom: 1rem;
    }

    .field input {
        width: 100%;
        box-sizing: border-box;
        padding: 0.625rem 0.75rem;
        border: 1px solid #d1d5db;
        border-radius: 0.5rem;
        font: inherit;
    }

    .field-error {
        color: #b91c1c;
        font-size: 0.875rem;
        margin: 0.25rem 0 0;
    }

    .privacy-note {
        color: #6b7280;
        font-size: 0.8125rem;
        margin-top: 1.5rem;
    }
"""

_STYLES = INFO_BOX_STYLES + DETAIL_BOX_STYLES + BUTTON_STYLES + _PAGE_STYLES


def _e(value: str | None) -> str:
    return html.escape(value or "", quote=True)


def page(title: str, content: str) -> str:
    return create_page(
        content=content,
        title=title,
        additional_styles=_STYLES,
        csp_policy=CSP_POLICY,
    )


def render_loading() -> str:
    return page("Loading", '<div class="spinner" role="status" aria-label="Loading"></div>')


def render_error(message: str, title: str = "Authorization Error") -> str:
    content = f"""
        <div class="container">
            <h1>{_e(title)}</h1>
            <div class="info-box error" role="alert">
                <p>{_e(message)}</p>
            </div>
            <div class="button-group">
                <button type="button" class="btn-secondary" onclick="window.location.href='/'">Return Home</button>
            </div>
        </div>
    """
    return page(title, content)


def _app_header(app_name: str, app_logo: str, app_description: str) -> str:
    logo = create_logo(icon_url=app_logo, alt_text=f"{app_name} Logo") if app_logo else ""
    description = f"<p>{_e(app_description)}</p>" if app_description else ""
    return f"{logo}<h1>{_e(app_name)}</h1>{description}"


def _detail_rows(controller: ApprovalController) -> str:
    rows = []
    for row in controller.request.summary():
        if row.link:
            value = "".join(
                f'<a href="{_e(v)}" target="_blank" rel="noopener noreferrer">{_e(v)}</a>'
                for v in row.values
            )
        elif len(row.values) > 1:
            value = "".join(f"<div>{_e(v)}</div>" for v in row.values)
        else:
            value = _e(row.values[0])
        rows.append(
            f"""
            <div class="detail-row">
                <div class="detail-label">{_e(row.label)}:</div>
                <div class="detail-value">{value}</div>
            </div>
            """
        )
    return f'<div class="detail-box">{"".join(rows)}</div>'


def render_approval(
    controller: ApprovalController,
    csrf_token: str,
    app_name: str,
    app_logo: str = "",
    app_description: str = "",
) -> str:
    """Render whatever the controller's current state calls for."""
    if controller.state is ApprovalState.LOADING:
        return render_loading()
    if controller.state is ApprovalState.ERROR:
        return render_error(controller.error or "")

    submitting = controller.state is not ApprovalState.READY
    client_name = controller.request.client_name
    inline_error = (
        f'<div class="info-box error" role="alert"><p>{_e(controller.inline_error)}</p></div>'
        if controller.inline_error
        else ""
    )
    authorize_label = "Authorizing..." if submitting else "Authorize"
    disabled = " disabled" if submitting else ""

    # Cancel is a plain button that closes the window; it is never disabled
    # and never submits anything.
    form = f"""
        <form method="post" action="" onsubmit="var b=this.querySelector('[name=decision]');if(b.disabled){{return false;}}b.disabled=true;b.textContent='Authorizing...';var h=document.createElement('input');h.type='hidden';h.name='decision';h.value='approve';this.appendChild(h);">
            <input type="hidden" name="csrf_token" value="{_e(csrf_token)}" />
            <div class="button-group">
                <button type="button" class="btn-deny" onclick="window.close()">Cancel</button>
                <button type="submit" name="decision" value="approve" class="btn-approve"{disabled}>{authorize_label}</button>
            </div>
        </form>
    """

    content = f"""
        <div class="container">
            {_app_header(app_name, app_logo, app_description)}
            <h2>{_e(client_name)} is requesting access</h2>
            <div class="info-box">
                <p>This MCP Client is requesting to be authorized on <strong>{_e(app_name)}</strong>.
                If you approve, you will be redirected to complete authentication.</p>
            </div>
            <h3>Application Details</h3>
            {_detail_rows(controller)}
            {inline_error}
            {form}
            <p class="privacy-note">User privacy is important. Ensure you trust this application
            before approving access to your data.</p>
        </div>
    """
    return page(f"Authorize {client_name}", content)


def render_login(email: str = "", errors: dict[str, str] | None = None, message: str = "") -> str:
    errors = errors or {}

    def field_error(name: str) -> str:
        return f'<p class="field-error">{_e(errors[name])}</p>' if name in errors else ""

    notice = (
        f'<div class="info-box error" role="alert"><p>{_e(message)}</p></div>' if message else ""
    )
    content = f"""
        <div class="container">
            <h1>Sign in</h1>
            {notice}
            <form method="post" action="">
                <div class="field">
                    <label for="email">Email</label>
                    <input id="email" name="email" type="email" value="{_e(email)}" placeholder="john@example.com" />
                    {field_error('email')}
                </div>
                <div class="field">
                    <label for="password">Password</label>
                    <input id="password" name="password" type="password" />
                    {field_error('password')}
                </div>
                <div class="button-group">
                    <button type="submit" class="btn-primary">Sign in</button>
                </div>
            </form>
        </div>
    """
    return page("Sign in", content)


def render_index(app_name: str, app_description: str) -> str:
    content = f"""
        <div class="container">
            <h1>{_e(app_name)}</h1>
            <p>{_e(app_description)}</p>
        </div>
    """
    return page(app_name, content)
