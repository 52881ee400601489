"""
HTML dashboard generator for LP Yield Tracker
Renders the wallet report (portfolio_report.py) as one server-side page.

Every dynamic value goes through _safe() (html.escape) and every link
through _safe_href() (domain allowlist). The CLI writes the page to a
0o600 temp file; the web app returns it directly.
"""

import atexit
import html as _html_mod
import os
import re
import tempfile
import webbrowser
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from lp_tracker.html_styles import build_css as _build_css
from lp_tracker.central_config import PROJECT_NAME, PROJECT_VERSION


# ── Temp File Registry (data minimization) ──────────────────────────────
_TEMP_FILES: List[str] = []


def _register_temp_file(path: str) -> None:
    """Register a temporary file for cleanup."""
    _TEMP_FILES.append(path)


def cleanup_reports() -> int:
    """Public API: explicitly delete all temp reports created this session.

    Returns the number of files removed.  Safe to call multiple times.
    """
    count = 0
    for path in list(_TEMP_FILES):
        try:
            if os.path.exists(path):
                os.unlink(path)
                count += 1
        except OSError:
            pass
    _TEMP_FILES.clear()
    return count


def _atexit_reminder() -> None:
    """Print a reminder about temp files on exit (non-destructive)."""
    remaining = [p for p in _TEMP_FILES if os.path.exists(p)]
    if remaining:
        import sys

        try:
            print(
                f"\n🗑️  {len(remaining)} temporary report(s) in {tempfile.gettempdir()}"
                f" — deleted on next reboot, or run cleanup_reports().",
                file=sys.stderr,
            )
        except Exception:
            pass  # stderr may be closed


# Register non-destructive reminder (NOT auto-delete)
atexit.register(_atexit_reminder)


def _safe(value: Any, fallback: str = "N/A") -> str:
    """Escape a value for safe HTML embedding (XSS prevention).

    Uses Python's html.escape() for robust entity encoding (CWE-79 mitigation).
    """
    if value is None:
        return fallback
    return _html_mod.escape(str(value), quote=True).replace("'", "&#x27;")


def _safe_filename(value: str) -> str:
    """Strip any character not safe for filenames (path traversal prevention)."""
    return re.sub(r"[^a-zA-Z0-9._-]", "_", str(value))


def _explorer(network: str) -> Dict[str, str]:
    """Get explorer info for a network."""
    explorers = {
        "base": {"name": "BaseScan", "base": "https://basescan.org"},
        "bsc": {"name": "BscScan", "base": "https://bscscan.com"},
        "ethereum": {"name": "Etherscan", "base": "https://etherscan.io"},
        "arbitrum": {"name": "Arbiscan", "base": "https://arbiscan.io"},
    }
    return explorers.get((network or "").lower(), {"name": "Explorer", "base": "#"})


# ── URL Security: Allowlist of Trusted Domains (CWE-601) ────────────────
ALLOWED_URL_DOMAINS: frozenset[str] = frozenset(
    {
        "basescan.org",
        "bscscan.com",
        "etherscan.io",
        "arbiscan.io",
        "pancakeswap.finance",
        "app.uniswap.org",
    }
)


def _is_allowed_url(url: str) -> bool:
    """Only HTTPS URLs on ALLOWED_URL_DOMAINS (or subdomains) pass; '#' always does."""
    if not url or url.startswith("#"):
        return True
    if not url.startswith("https://"):
        return False
    rest = url[8:]  # len("https://") == 8
    for sep in ("/", "?", "#"):
        idx = rest.find(sep)
        if idx != -1:
            rest = rest[:idx]
    domain = rest.lower().strip()
    if domain in ALLOWED_URL_DOMAINS:
        return True
    return any(domain.endswith("." + allowed) for allowed in ALLOWED_URL_DOMAINS)


def _safe_href(url: str) -> str:
    """Return the URL only if it passes the domain allowlist check.

    >>> _safe_href("https://basescan.org/tx/0x123")
    'https://basescan.org/tx/0x123'
    >>> _safe_href("https://evil-site.com/phish")
    '#'
    """
    return url if _is_allowed_url(url) else "#"


def _safe_num(val: Any, decimals: int = 2, default: float = 0) -> str:
    """Format a number with fixed decimals (no thousands separator). Use for token amounts, percentages, etc."""
    try:
        return f"{float(val if val is not None else default):.{decimals}f}"
    except (ValueError, TypeError):
        return f"{default:.{decimals}f}"


def _safe_usd(val: Any, decimals: int = 2, default: float = 0) -> str:
    """Format a number as USD with thousands separator ($1,234.56). Use for all dollar values."""
    try:
        return f"{float(val if val is not None else default):,.{decimals}f}"
    except (ValueError, TypeError):
        return f"{default:,.{decimals}f}"


def _opt_usd(val: Any) -> str:
    return "N/A" if val is None else f"${_safe_usd(val)}"


def _sign_class(val: Any) -> str:
    try:
        number = float(val)
    except (TypeError, ValueError):
        return "muted"
    return "positive" if number >= 0 else "negative"


def _breakeven_class(perc: Any) -> str:
    """Severity class from the remaining share of breakeven time (-1 = met / N/A)."""
    try:
        value = float(perc)
    except (TypeError, ValueError):
        return "muted"
    if value < 0:
        return "be-met"
    if value > 75:
        return "be-high"
    if value > 40:
        return "be-mid"
    if value > 10:
        return "be-low"
    return ""


# ── Section renderers ───────────────────────────────────────────────────


def _render_range(pos: Dict[str, Any]) -> str:
    marker = pos.get("price_range_percentage")
    marker = min(max(float(marker or 0), 0), 100)
    return f"""
        <div class="range-bar"><div class="marker" style="left: calc({marker:.1f}% - 2px)"></div></div>
        <div class="range-labels">
            <span>{_safe_num(pos.get("price_range_lower"), 6)} ({_safe_num(pos.get("perc_to_lower"))}% below)</span>
            <span>Current {_safe_num(pos.get("current_price"), 6)} {_safe(pos.get("price_label"))}</span>
            <span>{_safe_num(pos.get("price_range_upper"), 6)} ({_safe_num(pos.get("perc_to_upper"))}% above)</span>
        </div>"""


def _render_il(il: Dict[str, Any]) -> str:
    if not il.get("available"):
        return f'<p class="muted">Impermanent loss unavailable: {_safe(il.get("reason"))}</p>'

    cur = il.get("current") or {}
    rows = []
    for label, key in (("Upper bound", "upper_bound"), ("Lower bound", "lower_bound")):
        b = il.get(key) or {}
        rows.append(f"""
                <tr>
                    <td>{label}</td>
                    <td class="num">{_safe_num(b.get("price"), 6)}</td>
                    <td class="num {_sign_class(b.get("il_usd"))}">{_opt_usd(b.get("il_usd"))}</td>
                    <td class="num">{_safe_num(b.get("il_perc"))}%</td>
                    <td class="num {_breakeven_class(b.get("breakeven_time_perc"))}">{_safe(b.get("breakeven_time"))}</td>
                    <td class="num">{_safe(b.get("fees_vs_il"))}%</td>
                    <td class="num {_sign_class(b.get("fees_vs_il_net"))}">{_opt_usd(b.get("fees_vs_il_net"))}</td>
                </tr>""")

    warning = ""
    if il.get("liquidity_warning"):
        warning = (
            f'<div class="warning">Liquidity estimates diverge by '
            f'{_safe_num(il.get("liquidity_divergence_perc"), 4)}%; IL figures are approximate.</div>'
        )
    return f"""
        <p>Position age: <strong>{_safe(il.get("position_age"))}</strong> ·
           IL now: <span class="{_sign_class(cur.get("il_usd"))}">{_opt_usd(cur.get("il_usd"))}</span>
           ({_safe_num(cur.get("il_perc"))}%) ·
           Net gain/loss: <span class="{_sign_class(cur.get("net_gain_loss"))}">{_opt_usd(cur.get("net_gain_loss"))}</span></p>
        <table>
            <tr><th>Scenario</th><th>Price</th><th>IL (USD)</th><th>IL %</th>
                <th>Breakeven</th><th>Rewards vs IL</th><th>Net</th></tr>{"".join(rows)}
        </table>{warning}"""


def _render_performance(pos: Dict[str, Any]) -> str:
    fees = pos.get("unclaimed_fees") or {}
    claimed = pos.get("claimed_fees") or {}
    rewards = pos.get("rewards")
    yld = pos.get("yield") or {}
    t0, t1 = (pos.get("pair") or "?/?").split("/", 1)

    reward_rows = ""
    if rewards:
        reward_rows = f"""
            <tr><td>{_safe(rewards.get("symbol"))} pending</td><td class="num">{_safe_num(rewards.get("pending"), 6)}</td></tr>
            <tr><td>{_safe(rewards.get("symbol"))} claimed</td><td class="num">{_safe_num(rewards.get("claimed"), 6)}</td></tr>
            <tr><td>Farm rewards (USD)</td><td class="num">{_opt_usd(rewards.get("usd"))}</td></tr>"""

    if yld.get("available"):
        yield_rows = f"""
            <tr><td>APR</td><td class="num">{_safe_num(yld.get("annualized_apr"))}%</td></tr>
            <tr><td>Daily projected</td><td class="num">{_opt_usd(yld.get("daily_projected_usd"))}</td></tr>
            <tr><td>Annual projected</td><td class="num">{_opt_usd(yld.get("annual_projected_usd"))}</td></tr>"""
    else:
        yield_rows = f'<tr><td colspan="2" class="muted">Yield unavailable: {_safe(yld.get("reason"))}</td></tr>'

    return f"""
        <table>
            <tr><td>Unclaimed {_safe(t0)}</td><td class="num">{_safe_num(fees.get("token0"), 6)}</td></tr>
            <tr><td>Unclaimed {_safe(t1)}</td><td class="num">{_safe_num(fees.get("token1"), 6)}</td></tr>
            <tr><td>Unclaimed fees (USD)</td><td class="num">{_opt_usd(fees.get("usd"))}</td></tr>
            <tr><td>Claimed fees (USD)</td><td class="num">{_opt_usd(claimed.get("usd"))}</td></tr>{reward_rows}
            <tr><td><strong>Total rewards</strong></td><td class="num"><strong>{_opt_usd(pos.get("total_rewards_usd"))}</strong></td></tr>{yield_rows}
        </table>"""


def _render_details(pos: Dict[str, Any], network: str) -> str:
    bal = pos.get("current_balances") or {}
    init = pos.get("initial_state") or {}
    t0, t1 = (pos.get("pair") or "?/?").split("/", 1)
    explorer = _explorer(network)

    if init.get("available"):
        tx_url = _safe_href(f"{explorer['base']}/tx/{init.get('tx_hash', '')}")
        initial = f"""
            <tr><td>Opened</td><td class="num">{_safe(init.get("date"))}</td></tr>
            <tr><td>Entry price</td><td class="num">{_safe_num(init.get("price"), 6)}</td></tr>
            <tr><td>Opening value</td><td class="num">{_opt_usd(init.get("usd_value"))}</td></tr>
            <tr><td>Deposited</td><td class="num">{_safe_num((init.get("balances") or {}).get("token0"), 6)} {_safe(t0)} /
                {_safe_num((init.get("balances") or {}).get("token1"), 6)} {_safe(t1)}</td></tr>
            <tr><td>Mint tx</td><td class="num"><a href="{_safe(tx_url)}" rel="noopener noreferrer" target="_blank">{_safe(explorer["name"])}</a></td></tr>"""
    else:
        initial = f'<tr><td colspan="2" class="muted">Initial state unavailable: {_safe(init.get("reason"))}</td></tr>'

    return f"""
        <table>
            <tr><td>Token ID</td><td class="num">#{_safe(pos.get("token_id"))}</td></tr>
            <tr><td>Fee tier</td><td class="num">{_safe_num(pos.get("fee_tier"))}%</td></tr>
            <tr><td>{_safe(t0)}</td><td class="num">{_safe_num(bal.get("token0"), 6)}</td></tr>
            <tr><td>{_safe(t1)}</td><td class="num">{_safe_num(bal.get("token1"), 6)}</td></tr>
            <tr><td>Value</td><td class="num">{_opt_usd(pos.get("estimated_value_usd"))}</td></tr>{initial}
        </table>"""


def _render_events(events: List[Dict[str, Any]]) -> str:
    if not events:
        return '<p class="muted">No events recorded.</p>'
    rows = []
    for ev in events:
        ts = ev.get("timestamp")
        when = (
            datetime.fromtimestamp(int(ts), timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
            if ts else "N/A"
        )
        rows.append(
            f"<tr><td>{_safe(when)}</td><td>{_safe(ev.get('event_type'))}</td>"
            f"<td>{_safe(ev.get('details'))}</td><td class=\"num\">{_safe(ev.get('block'))}</td></tr>"
        )
    return f"""
        <table>
            <tr><th>Date</th><th>Type</th><th>Details</th><th>Block</th></tr>
            {"".join(rows)}
        </table>"""


def _render_position(pos: Dict[str, Any], network: str) -> str:
    in_range = pos.get("in_range")
    badge = "in-range" if in_range else "out-of-range"
    staked = '<span class="badge staked">Staked</span>' if pos.get("staked") else ""
    return f"""
    <section class="position">
        <div class="position-head">
            <h2>{_safe(pos.get("pair"))} <span class="muted">#{_safe(pos.get("token_id"))}</span></h2>
            <div>{staked} <span class="badge {badge}">{_safe(pos.get("status"))}</span></div>
        </div>
        {_render_range(pos)}
        <div class="grid">
            <div><h3>Performance</h3>{_render_performance(pos)}</div>
            <div><h3>Details</h3>{_render_details(pos, network)}</div>
        </div>
        <h3>Impermanent Loss &amp; Breakeven</h3>
        {_render_il(pos.get("impermanent_loss") or {})}
        <details>
            <summary>Events ({len(pos.get("events") or [])})</summary>
            {_render_events(pos.get("events") or [])}
        </details>
    </section>"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <meta http-equiv="Content-Security-Policy" content="default-src 'none'; style-src 'unsafe-inline'">
    <title>{_safe(title)}</title>
{_build_css()}
</head>
<body>
    <div class="container">
{body}
        <div class="footer">{_safe(PROJECT_NAME)} v{_safe(PROJECT_VERSION)} · read-only, not financial advice</div>
    </div>
</body>
</html>"""


def build_dashboard_html(report: Dict[str, Any]) -> str:
    """Render a wallet report (or its "message" form) as a full HTML page."""
    if "message" in report and "positions" not in report:
        body = f"""
        <div class="header"><h1>{_safe(PROJECT_NAME)}</h1></div>
        <p>{_safe(report["message"])}</p>"""
        return _page(PROJECT_NAME, body)

    network = report.get("network", "base")
    positions_html = "".join(_render_position(p, network) for p in report.get("positions") or [])
    skipped = report.get("skipped_positions") or []
    skipped_html = ""
    if skipped:
        skipped_html = (
            f'<div class="warning">Positions skipped after errors: '
            f'{_safe(", ".join("#" + str(t) for t in skipped))}</div>'
        )
    apy = report.get("total_annual_yield")
    body = f"""
        <div class="header">
            <h1>{_safe(PROJECT_NAME)} · {_safe(report.get("dex"))}</h1>
            <div class="meta">{_safe(report.get("wallet"))} · {_safe(network.title())} · block {_safe(report.get("block"))} · {_safe(report.get("generated_at"))}</div>
        </div>
        <div class="summary">
            <div class="tile"><div class="label">Portfolio value</div><div class="value">${_safe_usd(report.get("total_portfolio_value"))}</div></div>
            <div class="tile"><div class="label">Active positions</div><div class="value">{_safe(report.get("num_active_positions"), "0")}</div></div>
            <div class="tile"><div class="label">Daily projected</div><div class="value">${_safe_usd(report.get("total_daily_projected_usd_earnings"))}</div></div>
            <div class="tile"><div class="label">Annual projected</div><div class="value">${_safe_usd(report.get("total_annual_projected_usd_earnings"))}</div></div>
            <div class="tile"><div class="label">Annual yield</div><div class="value">{_safe_num(apy) + "%" if apy is not None else "N/A"}</div></div>
        </div>{skipped_html}
{positions_html}"""
    return _page(f"{PROJECT_NAME} · {report.get('wallet', '')}", body)


def build_error_html(message: str) -> str:
    body = f"""
        <div class="header"><h1>{_safe(PROJECT_NAME)}</h1></div>
        <div class="error">{_safe(message)}</div>"""
    return _page(PROJECT_NAME, body)


def generate_report_file(report: Dict[str, Any], open_browser: bool = True) -> Path:
    """Write the dashboard to a temporary file and optionally open it in a browser.

    The file is created with 0o600 permissions (owner-only) and is never
    persisted elsewhere; it lives in the OS temp directory.
    """
    html_content = build_dashboard_html(report)

    wallet = _safe_filename(report.get("wallet", "wallet"))[:12]
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"{wallet}_{timestamp}.html"

    temp_path = os.path.join(tempfile.gettempdir(), f"lp_tracker_{filename}")
    counter = 0
    while os.path.exists(temp_path):
        counter += 1
        temp_path = os.path.join(tempfile.gettempdir(), f"lp_tracker_{counter}_{filename}")
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as tmp:
        tmp.write(html_content)
    filepath = Path(temp_path)
    _register_temp_file(str(filepath))
    if open_browser:
        webbrowser.open(f"file://{filepath.resolve()}")
    return filepath
