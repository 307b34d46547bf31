#!/usr/bin/env python3
"""
Phone web app, embedded so the server ships as a single package.

The page reads its token from the URL fragment (#token=...) the QR code
carries, keeps it in localStorage and sends it as a bearer token.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

# =============================================================================
#                              HTML UI
# =============================================================================

INDEX_HTML = '''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1, viewport-fit=cover">
    <meta name="theme-color" content="#1a73e8">
    <meta name="apple-mobile-web-app-capable" content="yes">
    <link rel="manifest" href="/manifest.json">
    <title>Calling Parents</title>
    <style>
        :root {
            --accent: #1a73e8; --warn: #e8710a; --ok: #188038; --err: #d93025;
            --bg: #f5f6f8; --fg: #202124; --muted: #5f6368;
            --radius: 12px; --space: 12px;
        }
        * { box-sizing: border-box; }
        body { margin: 0; font-family: system-ui, sans-serif; background: var(--bg); color: var(--fg); }
        header {
            display: flex; align-items: center; gap: var(--space);
            padding: var(--space) 16px; background: var(--accent); color: #fff;
        }
        header.disconnected { background: var(--warn); }
        header h1 { flex: 1; margin: 0; font-size: 1.2rem; }
        header button { background: none; border: none; color: inherit; font-size: 1.3rem; }
        main { padding: 16px; max-width: 640px; margin: 0 auto; }
        .hidden { display: none !important; }
        .status-dot { width: 10px; height: 10px; border-radius: 50%; background: #aaa; }
        .status-dot.connected { background: #7cf29c; }
        .status-dot.disconnected { background: #ffd0a0; }
        .banner { padding: 10px; border-radius: var(--radius); background: #fde7d3; color: #8a3c00; margin-bottom: var(--space); }
        .grid { display: grid; grid-template-columns: repeat(auto-fill, minmax(120px, 1fr)); gap: 8px; margin-bottom: 16px; }
        .grid.disabled { opacity: 0.5; pointer-events: none; }
        .grid-empty { color: var(--muted); grid-column: 1 / -1; }
        .child-btn, .btn {
            padding: 14px 10px; border-radius: var(--radius); border: 1px solid #dadce0;
            background: #fff; font-size: 1rem;
        }
        .child-btn.selected { border-color: var(--accent); background: #e8f0fe; }
        .row { display: flex; gap: 8px; }
        .row input { flex: 1; padding: 12px; font-size: 1rem; border-radius: var(--radius); border: 1px solid #dadce0; }
        .btn.primary { background: var(--accent); border-color: var(--accent); color: #fff; }
        .btn.primary:disabled { opacity: 0.5; }
        .btn.danger { color: var(--err); }
        .status-bar { margin-top: 16px; padding: 12px; border-radius: var(--radius); display: flex; justify-content: space-between; align-items: center; }
        .status-bar.active { background: #e6f4ea; color: var(--ok); }
        .status-bar.error { background: #fce8e6; color: var(--err); }
        ul { list-style: none; padding: 0; }
        li { display: flex; justify-content: space-between; padding: 8px 0; border-bottom: 1px solid #eee; }
        .connection-status.success { color: var(--ok); }
        .connection-status.error { color: var(--err); }
        .toast {
            position: fixed; left: 50%; bottom: 24px; transform: translateX(-50%);
            padding: 10px 16px; border-radius: var(--radius); color: #fff; background: #333;
        }
        .toast.success { background: var(--ok); }
        .toast.error { background: var(--err); }
        footer { text-align: center; color: var(--muted); font-size: 0.75rem; padding: 16px; }
    </style>
</head>
<body>
    <header>
        <span id="status-dot" class="status-dot" title="Connection status"></span>
        <h1 id="header-title">Calling Parents</h1>
        <button id="btn-back" class="hidden" aria-label="Back">&larr;</button>
        <button id="btn-settings" aria-label="Settings">&#9881;</button>
    </header>

    <main>
        <div id="auth-error" class="banner hidden">
            <strong>Not authorized.</strong> Scan the QR code shown on the server again.
        </div>
        <div id="connection-banner" class="banner hidden">Display controller is not reachable</div>

        <section id="view-main">
            <div id="children-grid" class="grid"></div>
            <div class="row">
                <input id="input-name" type="text" placeholder="Enter name..." autocomplete="off">
                <button id="btn-send" class="btn primary" disabled>Send</button>
            </div>
            <div id="status-bar" class="status-bar hidden">
                <span id="status-text"></span>
                <span id="countdown"></span>
                <button id="btn-clear" class="btn danger">Clear</button>
            </div>
        </section>

        <section id="view-settings" class="hidden">
            <h2>Connection</h2>
            <button id="btn-test-connection" class="btn">Test connection</button>
            <p id="connection-status" class="connection-status"></p>

            <h2>Children</h2>
            <div class="row">
                <input id="input-add-child" type="text" placeholder="Add name..." autocomplete="off">
                <button id="btn-add-child" class="btn">Add</button>
            </div>
            <ul id="children-list"></ul>
            <button id="btn-reload-children" class="btn">Reload list from server</button>
        </section>
    </main>

    <div id="toast" class="toast hidden"></div>
    <footer id="version-info"></footer>
    <script src="/app.js"></script>
</body>
</html>
'''

APP_JS = r'''"use strict";

const TOKEN_KEY = "calling_parents_token";

let token = "";
let children = [];
let autoClearSeconds = 0;
let countdownTimer = null;
let countdownLeft = 0;
let connected = false;
let toastTimer = null;

const $ = (id) => document.getElementById(id);

function readToken() {
    if (location.hash.startsWith("#token=")) {
        token = decodeURIComponent(location.hash.slice(7));
        localStorage.setItem(TOKEN_KEY, token);
        // keep the token out of the address bar and out of shared links
        history.replaceState(null, "", location.pathname);
    } else {
        token = localStorage.getItem(TOKEN_KEY) || "";
    }
}

async function authFetch(url, options = {}) {
    const headers = Object.assign({}, options.headers || {});
    if (token) headers["Authorization"] = "Bearer " + token;
    const resp = await fetch(url, Object.assign({}, options, { headers }));
    if (resp.status === 401) {
        localStorage.removeItem(TOKEN_KEY);
        token = "";
        $("auth-error").classList.remove("hidden");
        throw new Error("unauthorized");
    }
    return resp;
}

function postJSON(url, body, method = "POST") {
    return authFetch(url, {
        method,
        headers: { "Content-Type": "application/json" },
        body: JSON.stringify(body),
    });
}

async function errorText(resp) {
    try {
        const data = await resp.json();
        if (data && data.error) return data.error;
    } catch (_) { /* not JSON */ }
    return "HTTP " + resp.status;
}

function toast(text, kind) {
    const el = $("toast");
    el.textContent = text;
    el.className = "toast " + kind;
    clearTimeout(toastTimer);
    toastTimer = setTimeout(() => el.classList.add("hidden"), 3000);
}

// Roster
function renderChildren() {
    const grid = $("children-grid");
    const list = $("children-list");
    grid.innerHTML = "";
    list.innerHTML = "";
    if (children.length === 0) {
        const empty = document.createElement("div");
        empty.className = "grid-empty";
        empty.textContent = "No names yet. Add some in the settings.";
        grid.appendChild(empty);
    }
    for (const name of children) {
        const btn = document.createElement("button");
        btn.className = "child-btn";
        btn.textContent = name;
        btn.addEventListener("click", () => { $("input-name").value = name; onNameInput(); });
        grid.appendChild(btn);

        const li = document.createElement("li");
        const span = document.createElement("span");
        span.textContent = name;
        const rm = document.createElement("button");
        rm.className = "btn danger";
        rm.textContent = "✕";
        rm.setAttribute("aria-label", "Remove " + name);
        rm.addEventListener("click", () => removeChild(name));
        li.appendChild(span);
        li.appendChild(rm);
        list.appendChild(li);
    }
    onNameInput();
}

async function loadChildren(announce) {
    try {
        const resp = await authFetch("/children");
        if (!resp.ok) throw new Error(await errorText(resp));
        children = await resp.json();
        renderChildren();
        if (announce) toast(children.length + " names loaded", "success");
    } catch (err) {
        if (announce) toast("Could not load list: " + err.message, "error");
    }
}

async function addChild() {
    const input = $("input-add-child");
    const name = input.value.trim();
    if (!name) return;
    try {
        const resp = await postJSON("/children", { name });
        if (!resp.ok) throw new Error(await errorText(resp));
        if (resp.status === 200) toast('"' + name + '" is already on the list', "error");
        children = await resp.json();
        input.value = "";
        renderChildren();
    } catch (err) {
        toast("Could not add: " + err.message, "error");
    }
}

async function removeChild(name) {
    try {
        const resp = await postJSON("/children", { name }, "DELETE");
        if (!resp.ok) throw new Error(await errorText(resp));
        children = await resp.json();
        renderChildren();
    } catch (err) {
        toast("Could not remove: " + err.message, "error");
    }
}

// Messages
function onNameInput() {
    const name = $("input-name").value.trim();
    $("btn-send").disabled = !name || !connected;
    document.querySelectorAll(".child-btn").forEach((b) => {
        b.classList.toggle("selected", b.textContent === name);
    });
}

function showStatus(text, kind) {
    $("status-text").textContent = text;
    $("status-bar").className = "status-bar " + kind;
}

function hideStatus() {
    $("status-bar").className = "status-bar hidden";
    stopCountdown();
}

async function sendMessage() {
    const name = $("input-name").value.trim();
    if (!name) return;
    $("btn-send").disabled = true;
    try {
        const resp = await postJSON("/message/send", { name });
        if (resp.status !== 204) throw new Error(await errorText(resp));
        showStatus("Showing: " + name, "active");
        toast("Sent: " + name, "success");
        if (navigator.vibrate) navigator.vibrate(100);
        startCountdown();
    } catch (err) {
        showStatus("Sending failed", "error");
        toast("Error: " + err.message, "error");
    } finally {
        onNameInput();
    }
}

async function clearMessage(automatic) {
    try {
        const resp = await authFetch("/message/clear", { method: "POST" });
        if (resp.status !== 204) throw new Error(await errorText(resp));
        hideStatus();
        $("input-name").value = "";
        onNameInput();
        toast(automatic ? "Message cleared automatically" : "Message cleared", "success");
    } catch (err) {
        toast("Clearing failed: " + err.message, "error");
    }
}

function startCountdown() {
    stopCountdown();
    if (autoClearSeconds <= 0) return;
    countdownLeft = autoClearSeconds;
    $("countdown").textContent = countdownLeft + "s";
    countdownTimer = setInterval(() => {
        countdownLeft -= 1;
        if (countdownLeft <= 0) {
            stopCountdown();
            clearMessage(true);
        } else {
            $("countdown").textContent = countdownLeft + "s";
        }
    }, 1000);
}

function stopCountdown() {
    clearInterval(countdownTimer);
    countdownTimer = null;
    $("countdown").textContent = "";
}

// Connection
function setConnected(state) {
    connected = state;
    $("status-dot").className = "status-dot " + (state ? "connected" : "disconnected");
    document.querySelector("header").classList.toggle("disconnected", !state);
    $("connection-banner").classList.toggle("hidden", state);
    $("children-grid").classList.toggle("disabled", !state);
    const meta = document.querySelector('meta[name="theme-color"]');
    if (meta) meta.content = state ? "#1a73e8" : "#e8710a";
    onNameInput();
}

async function pollConnection() {
    try {
        const resp = await authFetch("/message/test");
        setConnected(resp.ok);
    } catch (_) {
        setConnected(false);
    }
}

async function testConnection() {
    const el = $("connection-status");
    el.textContent = "Testing...";
    el.className = "connection-status";
    try {
        const resp = await authFetch("/message/test");
        if (!resp.ok) throw new Error(await errorText(resp));
        const data = await resp.json();
        const count = Array.isArray(data) ? data.length : 0;
        el.textContent = "Connected, " + count + " message(s) on the controller";
        el.className = "connection-status success";
    } catch (err) {
        el.textContent = "Connection failed: " + err.message;
        el.className = "connection-status error";
    }
}

async function loadConfig() {
    try {
        const resp = await authFetch("/message/config");
        if (!resp.ok) return;
        const cfg = await resp.json();
        if (typeof cfg.autoClearSeconds === "number") autoClearSeconds = cfg.autoClearSeconds;
    } catch (_) { /* keep defaults */ }
}

async function loadVersion() {
    try {
        const resp = await fetch("/version");
        if (!resp.ok) return;
        const info = await resp.json();
        const el = $("version-info");
        el.textContent = info.version;
        el.title = info.version + " (" + info.commit + ") " + info.date;
    } catch (_) { /* cosmetic */ }
}

function showView(settings) {
    $("view-main").classList.toggle("hidden", settings);
    $("view-settings").classList.toggle("hidden", !settings);
    $("btn-settings").classList.toggle("hidden", settings);
    $("btn-back").classList.toggle("hidden", !settings);
    $("header-title").textContent = settings ? "Settings" : "Calling Parents";
}

function init() {
    readToken();
    loadVersion();
    if (!token) {
        $("auth-error").classList.remove("hidden");
        return;
    }
    $("btn-settings").addEventListener("click", () => showView(true));
    $("btn-back").addEventListener("click", () => showView(false));
    $("btn-send").addEventListener("click", sendMessage);
    $("btn-clear").addEventListener("click", () => clearMessage(false));
    $("btn-test-connection").addEventListener("click", testConnection);
    $("btn-add-child").addEventListener("click", addChild);
    $("btn-reload-children").addEventListener("click", () => loadChildren(true));
    $("input-name").addEventListener("input", onNameInput);
    $("input-name").addEventListener("keydown", (e) => { if (e.key === "Enter") sendMessage(); });
    $("input-add-child").addEventListener("keydown", (e) => { if (e.key === "Enter") addChild(); });

    renderChildren();
    loadChildren(false);
    loadConfig();
    pollConnection();
    setInterval(pollConnection, 10000);
}

if ("serviceWorker" in navigator) {
    navigator.serviceWorker.register("/sw.js").catch((err) => console.warn("service worker:", err));
}

init();
'''

# App shell is cache-first; everything behind the token always goes to the network
SW_JS = '''const CACHE = "calling-parents-v1";
const SHELL = ["/", "/index.html", "/app.js", "/manifest.json"];
const LIVE = ["/message/", "/children", "/api/", "/version"];

self.addEventListener("install", (event) => {
    event.waitUntil(caches.open(CACHE).then((c) => c.addAll(SHELL)));
    self.skipWaiting();
});

self.addEventListener("activate", (event) => {
    event.waitUntil(
        caches.keys().then((keys) =>
            Promise.all(keys.filter((k) => k !== CACHE).map((k) => caches.delete(k))))
    );
    self.clients.claim();
});

self.addEventListener("fetch", (event) => {
    const path = new URL(event.request.url).pathname;
    if (event.request.method !== "GET" || LIVE.some((p) => path.startsWith(p))) {
        return;
    }
    event.respondWith(
        caches.match(event.request).then((hit) => hit || fetch(event.request).then((resp) => {
            if (resp.ok) {
                const copy = resp.clone();
                caches.open(CACHE).then((c) => c.put(event.request, copy));
            }
            return resp;
        }))
    );
});
'''

MANIFEST = {
    "name": "Calling Parents",
    "short_name": "Parents",
    "start_url": "/",
    "display": "standalone",
    "background_color": "#f5f6f8",
    "theme_color": "#1a73e8",
}

# Pre-encode once at import time
_INDEX_BYTES = INDEX_HTML.encode("utf-8")

ASSETS = {
    "/": (_INDEX_BYTES, "text/html; charset=utf-8"),
    "/index.html": (_INDEX_BYTES, "text/html; charset=utf-8"),
    "/app.js": (APP_JS.encode("utf-8"), "application/javascript; charset=utf-8"),
    "/sw.js": (SW_JS.encode("utf-8"), "application/javascript; charset=utf-8"),
}


def _asset_endpoint(content: bytes, media_type: str):
    def serve():
        return Response(content=content, media_type=media_type, headers={"Cache-Control": "no-cache"})
    return serve


def build_static_router() -> APIRouter:
    """Serves the embedded web app; unknown paths fall through to the router's 404."""
    router = APIRouter()

    @router.get("/manifest.json")
    def manifest():
        return JSONResponse(MANIFEST, media_type="application/manifest+json")

    for path, (content, media_type) in ASSETS.items():
        router.add_api_route(path, _asset_endpoint(content, media_type), methods=["GET"],
                             include_in_schema=False)

    return router
