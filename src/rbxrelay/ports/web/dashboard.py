"""Single-page dashboard served at `/gui`, driven entirely by the `/ws` channel."""

DASHBOARD_HTML = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>rbxrelay</title>
<style>
  body { font-family: system-ui, sans-serif; margin: 0; background: #16181d; color: #e4e6eb; }
  header { display: flex; gap: 1.5rem; align-items: center; padding: .75rem 1rem; background: #1f2229; }
  main { display: grid; grid-template-columns: 1fr 1fr; gap: 1rem; padding: 1rem; }
  section { background: #1f2229; border-radius: 6px; padding: .75rem; }
  h2 { font-size: 1rem; margin: 0 0 .5rem; }
  .dot { display: inline-block; width: .6rem; height: .6rem; border-radius: 50%; background: #c0392b; }
  .dot.on { background: #27ae60; }
  .approval { border: 1px solid #3a3f4b; border-radius: 4px; padding: .5rem; margin-bottom: .5rem; }
  .approval pre { max-height: 10rem; overflow: auto; background: #121418; padding: .4rem; }
  #log { height: 60vh; overflow: auto; font-family: ui-monospace, monospace; font-size: .8rem; }
  .success { color: #2ecc71; } .warning { color: #f1c40f; } .error { color: #e74c3c; }
  label { cursor: pointer; }
</style>
</head>
<body>
<header>
  <strong>rbxrelay</strong>
  <span><span id="agent" class="dot"></span> Studio plugin</span>
  <label><input type="checkbox" id="autoAccept"> Auto-accept</label>
  <label><input type="checkbox" id="strictMode"> Strict edit mode</label>
</header>
<main>
  <section>
    <h2>Pending approvals</h2>
    <div id="approvals"></div>
    <h2>Whitelist</h2>
    <div id="whitelist"></div>
  </section>
  <section>
    <h2>Log</h2>
    <div id="log"></div>
  </section>
</main>
<script>
const TOOLS = ["tree", "create", "get", "modifyObject", "editScript", "convertScript", "readLine",
  "deleteLines", "insertLines", "getScriptInfo", "scriptSearch", "scriptSearchOnly", "delete", "copy"];
const $ = (id) => document.getElementById(id);
let ws;

function send(event, data) { ws.send(JSON.stringify({event, data})); }

function renderWhitelist(list) {
  const box = $("whitelist");
  box.innerHTML = "";
  for (const tool of TOOLS) {
    const label = document.createElement("label");
    const cb = document.createElement("input");
    cb.type = "checkbox";
    cb.checked = list.includes(tool);
    cb.onchange = () => send("toggleWhitelist", tool);
    label.append(cb, " " + tool);
    box.append(label, document.createElement("br"));
  }
}

function addApproval(req) {
  const div = document.createElement("div");
  div.className = "approval";
  div.id = "approval-" + req.id;
  const pre = document.createElement("pre");
  pre.textContent = JSON.stringify(req.args, null, 2);
  const yes = document.createElement("button");
  yes.textContent = "Approve";
  yes.onclick = () => send("approvalResponse", {id: req.id, approved: true});
  const no = document.createElement("button");
  no.textContent = "Reject";
  no.onclick = () => send("approvalResponse", {id: req.id, approved: false});
  div.append(req.tool, pre, yes, " ", no);
  $("approvals").append(div);
}

function log(entry) {
  const line = document.createElement("div");
  line.className = entry.type || "info";
  line.textContent = entry.message;
  const box = $("log");
  box.append(line);
  box.scrollTop = box.scrollHeight;
}

function connect() {
  ws = new WebSocket((location.protocol === "https:" ? "wss://" : "ws://") + location.host + "/ws");
  ws.onmessage = (ev) => {
    const {event, data} = JSON.parse(ev.data);
    if (event === "approvalRequest") addApproval(data);
    else if (event === "approvalProcessed") { const el = $("approval-" + data.id); if (el) el.remove(); }
    else if (event === "whitelistUpdate") renderWhitelist(data);
    else if (event === "autoAcceptUpdate") $("autoAccept").checked = data;
    else if (event === "strictModeUpdate") $("strictMode").checked = data;
    else if (event === "agentStatus") $("agent").classList.toggle("on", data.connected);
    else if (event === "log") log(data);
  };
  ws.onclose = () => setTimeout(connect, 1000);
}

$("autoAccept").onchange = (ev) => send("toggleAutoAccept", ev.target.checked);
$("strictMode").onchange = (ev) => send("toggleStrictMode", ev.target.checked);
connect();
</script>
</body>
</html>
"""
