# FastAPI application entry point that initialises
# the app and registers the handshake routes.

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from qrlogin.core.config import settings
from qrlogin.routes.auth import router as auth_router, issuer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Pending expiry timers must not outlive the server
    issuer.shutdown()
    logger.info("Issuer timers cancelled")


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
app.include_router(auth_router)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/login", response_class=HTMLResponse)
def login_page():
    # Thin browser rendition of qrlogin.client.state_machine
    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>QR Login</title>
        <style>
            body {{ font-family: Arial, sans-serif; display: flex; justify-content: center;
                   align-items: center; min-height: 100vh; margin: 0; background: #f5f5f5; }}
            .container {{ background: white; padding: 2rem; border-radius: 10px; text-align: center; }}
            .error {{ color: #dc3545; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>Login with QR code</h1>
            <div id="qr-code"></div>
            <p id="status">Generating QR code...</p>
            <button id="retry" style="display:none">Generate new code</button>
        </div>
        <script>
            const TIMEOUT_MS = {settings.CREATE_TIMEOUT_MS};
            const REDIRECT_DELAY_MS = {settings.REDIRECT_DELAY_MS};
            const TTL_MS = {settings.SESSION_TTL_SECONDS * 1000};
            const MESSAGES = {{
                generating: 'Generating QR code...',
                waiting: 'Scan the code with the app',
                scanned: 'Scanned. Confirm on your device',
                authenticated: 'Login successful, redirecting...',
                expired: 'The QR code expired'
            }};
            const CLIENT_SESSION_ID = 'web-session-' + crypto.randomUUID();
            let state = 'generating', token = null, socket = null, expiryTimer = null, done = false;

            function join(t) {{
                socket.send(JSON.stringify({{action: 'join', token: t, clientSessionId: CLIENT_SESSION_ID}}));
            }}

            function render(next, message) {{
                state = next;
                const el = document.getElementById('status');
                el.className = next === 'error' ? 'error' : '';
                el.textContent = message || MESSAGES[next];
                document.getElementById('retry').style.display =
                    (next === 'expired' || next === 'error') ? 'inline' : 'none';
                if (next !== 'waiting' && next !== 'scanned') document.getElementById('qr-code').innerHTML = '';
            }}

            function showCode(code) {{
                document.getElementById('qr-code').innerHTML = '<img width="256" height="256" src="' + code + '">';
            }}

            function teardown() {{
                clearTimeout(expiryTimer);
                if (socket) {{ socket.close(); socket = null; }}
            }}

            function armExpiry() {{
                clearTimeout(expiryTimer);
                expiryTimer = setTimeout(() => {{ teardown(); render('expired'); }}, TTL_MS);
            }}

            function onEvent(msg) {{
                if (msg.event === 'error') {{ teardown(); render('error', msg.data.message); return; }}
                if (msg.token !== token) return;
                if (msg.event === 'qr-status-update') {{
                    if (msg.data.status === 'scanned' && state === 'waiting') render('scanned');
                    else if (msg.data.status !== 'scanned' && (state === 'waiting' || state === 'scanned')) {{
                        teardown(); render('expired');
                    }}
                }} else if (msg.event === 'qr-auth-success') {{
                    if (done || (state !== 'waiting' && state !== 'scanned')) return;
                    const cred = msg.data.credential && msg.data.credential.token;
                    teardown();
                    if (!cred) {{ render('error', 'Authentication failed to return a session.'); return; }}
                    done = true;
                    document.cookie = 'jwt=' + cred + '; path=/; SameSite=Strict';
                    render('authenticated');
                    setTimeout(() => {{ window.location.href = '/'; }}, REDIRECT_DELAY_MS);
                }} else if (msg.event === 'qr-code-refreshed' && state === 'waiting') {{
                    const old = token;
                    token = msg.data.token;
                    join(token);
                    socket.send(JSON.stringify({{action: 'leave', token: old}}));
                    showCode(msg.data.renderableCode);
                    armExpiry();
                }}
            }}

            async function generate() {{
                teardown();
                if (token && !done) {{
                    // Retire the previous code so it cannot be completed any more
                    fetch('/auth/qr/cancel', {{
                        method: 'POST',
                        headers: {{ 'Content-Type': 'application/json' }},
                        body: JSON.stringify({{ token: token }})
                    }}).catch(() => {{}});
                }}
                token = null;
                render('generating');
                const controller = new AbortController();
                const timeoutId = setTimeout(() => controller.abort(), TIMEOUT_MS);
                try {{
                    const resp = await fetch('/auth/qr/generate', {{
                        method: 'POST',
                        headers: {{ 'Content-Type': 'application/json' }},
                        body: JSON.stringify({{ clientSessionId: CLIENT_SESSION_ID,
                                                deviceMetadata: navigator.userAgent }}),
                        signal: controller.signal
                    }});
                    clearTimeout(timeoutId);
                    if (!resp.ok) throw new Error('Failed to generate QR code');
                    const data = await resp.json();
                    token = data.token;
                    showCode(data.renderableCode);
                    render('waiting');
                    armExpiry();
                    const scheme = location.protocol === 'https:' ? 'wss://' : 'ws://';
                    socket = new WebSocket(scheme + location.host + '/auth/qr/ws');
                    socket.onopen = () => join(token);
                    socket.onmessage = (e) => onEvent(JSON.parse(e.data));
                    socket.onerror = () => {{ teardown(); render('error', 'Realtime connection failed'); }};
                }} catch (error) {{
                    clearTimeout(timeoutId);
                    render('error', error.name === 'AbortError'
                        ? 'Request timed out. Please check if the backend is running.'
                        : error.message);
                }}
            }}

            document.getElementById('retry').onclick = generate;
            window.addEventListener('beforeunload', teardown);
            generate();
        </script>
    </body>
    </html>
    """

    return HTMLResponse(content=html_content)
