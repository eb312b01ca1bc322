"""
Storefront module — the one script the theme extension loads.

GET {proxy}/storefront.js renders it with:
  - the timezone → country table (country guess when the edge sends none)
  - the bot pattern list (client-side is_bot hint for the beacon)
  - the proxy prefix the calls go through

In the browser it:
  1. reuses or creates a session id (sessionStorage)
  2. calls check_access with shop, country, session_id, page_url, referrer
  3. on block: redirects when redirect_info says so, else replaces the page
     with the block message
  4. applies content protection flags
  5. sends the analytics beacon on pagehide
"""

import json

from storeguard.core.bot_detection import BOT_SIGNATURES
from storeguard.core.timezones import TIMEZONE_COUNTRY

SCRIPT_VERSION = "1"


def _bot_patterns() -> list[str]:
    return [sig.pattern.pattern for sig in BOT_SIGNATURES]


def render_storefront_script(proxy_prefix: str) -> str:
    prefix = json.dumps(proxy_prefix.rstrip("/"))
    tz_map = json.dumps(dict(TIMEZONE_COUNTRY), sort_keys=True)
    bot_patterns = json.dumps(_bot_patterns())

    return f"""/* storeguard storefront v{SCRIPT_VERSION} */
(function() {{
  "use strict";
  if (window.__storeguard) return;
  window.__storeguard = {{ version: "{SCRIPT_VERSION}" }};

  var PROXY = {prefix};
  var TZ_COUNTRY = {tz_map};
  var BOT_PATTERNS = {bot_patterns};
  var SESSION_KEY = "sg_session";
  var VIEWS_KEY = "sg_views";
  var startedAt = Date.now();

  function shopDomain() {{
    try {{ return (window.Shopify && window.Shopify.shop) || window.location.hostname; }}
    catch (e) {{ return window.location.hostname; }}
  }}

  function timezone() {{
    try {{ return Intl.DateTimeFormat().resolvedOptions().timeZone || null; }}
    catch (e) {{ return null; }}
  }}

  function guessCountry() {{
    var tz = timezone();
    return (tz && TZ_COUNTRY[tz]) || null;
  }}

  function looksLikeBot() {{
    var ua = (navigator.userAgent || "").toLowerCase();
    if (!ua) return true;
    for (var i = 0; i < BOT_PATTERNS.length; i++) {{
      if (ua.indexOf(BOT_PATTERNS[i]) !== -1) return true;
    }}
    return false;
  }}

  function sessionId() {{
    try {{
      var id = sessionStorage.getItem(SESSION_KEY);
      if (!id) {{
        id = "s_" + Math.random().toString(36).slice(2, 11) + "_" + Date.now();
        sessionStorage.setItem(SESSION_KEY, id);
      }}
      return id;
    }} catch (e) {{
      return null;
    }}
  }}

  function countPageView() {{
    try {{
      var n = parseInt(sessionStorage.getItem(VIEWS_KEY) || "0", 10) + 1;
      sessionStorage.setItem(VIEWS_KEY, String(n));
      return n;
    }} catch (e) {{
      return 1;
    }}
  }}

  function showBlockPage(result) {{
    var box = document.createElement("div");
    box.setAttribute("style", "max-width:560px;margin:15vh auto;padding:24px;font-family:sans-serif;text-align:center");
    var h = document.createElement("h1");
    h.textContent = "Access restricted";
    var p = document.createElement("p");
    p.textContent = result.message || "Access to this store has been restricted.";
    box.appendChild(h);
    box.appendChild(p);
    var info = result.redirect_info;
    if (info && info.custom_message) {{
      var extra = document.createElement("p");
      extra.textContent = info.custom_message;
      box.appendChild(extra);
    }}
    document.documentElement.innerHTML = "<head></head><body></body>";
    document.body.appendChild(box);
  }}

  function applyContentProtection(cp) {{
    if (!cp || !cp.enabled || !cp.settings) return;
    var s = cp.settings;
    if (s.disable_right_click) document.addEventListener("contextmenu", function(e) {{ e.preventDefault(); }});
    if (s.disable_image_drag) document.addEventListener("dragstart", function(e) {{
      if (e.target && e.target.tagName === "IMG") e.preventDefault();
    }});
    if (s.disable_copy_paste) ["copy", "cut", "paste"].forEach(function(evt) {{
      document.addEventListener(evt, function(e) {{ e.preventDefault(); }});
    }});
    if (s.disable_text_selection) {{
      var style = document.createElement("style");
      style.textContent = "body{{-webkit-user-select:none;user-select:none}}";
      document.head.appendChild(style);
    }}
    if (s.disable_dev_tools) document.addEventListener("keydown", function(e) {{
      var k = (e.key || "").toUpperCase();
      if (k === "F12" || (e.ctrlKey && e.shiftKey && (k === "I" || k === "J" || k === "C")) || (e.ctrlKey && k === "U")) {{
        e.preventDefault();
      }}
    }});
  }}

  function sendBeacon(sid, pageViews) {{
    var perf = {{}};
    try {{
      var nav = performance.getEntriesByType("navigation")[0];
      if (nav) {{
        perf.load_time = Math.round(nav.loadEventEnd || nav.duration);
        perf.dom_ready = Math.round(nav.domContentLoadedEventEnd);
      }}
    }} catch (e) {{}}

    var data = {{
      shop: shopDomain(),
      session_id: sid,
      country_code: guessCountry(),
      is_bot: looksLikeBot(),
      page_url: window.location.href,
      referrer: document.referrer || null,
      duration: Math.round((Date.now() - startedAt) / 1000),
      page_views: pageViews,
      user_agent: navigator.userAgent,
      screen_resolution: screen.width + "x" + screen.height,
      viewport_size: window.innerWidth + "x" + window.innerHeight,
      timezone: timezone(),
      language: navigator.language || null,
      performance: perf
    }};
    var body = JSON.stringify(data);
    try {{
      navigator.sendBeacon(PROXY + "/track_analytics", new Blob([body], {{ type: "application/json" }}));
    }} catch (e) {{
      try {{
        fetch(PROXY + "/track_analytics", {{
          method: "POST",
          headers: {{ "Content-Type": "application/json" }},
          body: body,
          keepalive: true
        }});
      }} catch (e2) {{}}
    }}
  }}

  var sid = sessionId();
  var pageViews = countPageView();
  var params = new URLSearchParams({{ shop: shopDomain(), page_url: window.location.href }});
  var country = guessCountry();
  if (country) params.set("country", country);
  var tz = timezone();
  if (tz) params.set("timezone", tz);
  if (sid) params.set("session_id", sid);
  if (document.referrer) params.set("referrer", document.referrer);

  fetch(PROXY + "/check_access?" + params.toString(), {{ credentials: "same-origin" }})
    .then(function(r) {{ return r.ok ? r.json() : null; }})
    .then(function(result) {{
      if (!result) return;
      if (result.session_id && sid === null) sid = result.session_id;
      if (result.blocked) {{
        var info = result.redirect_info;
        if (info && info.has_redirect && info.redirect_url) {{
          window.location.replace(info.redirect_url);
        }} else {{
          showBlockPage(result);
        }}
        return;
      }}
      applyContentProtection(result.content_protection);
      window.addEventListener("pagehide", function() {{
        if (sid) sendBeacon(sid, pageViews);
      }});
    }})
    .catch(function() {{}});
}})();
"""
