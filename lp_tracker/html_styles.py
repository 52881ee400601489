"""
HTML Dashboard CSS Styles
=========================

All CSS for the LP Yield Tracker dashboard page.
Separated from html_generator.py for maintainability.

In-range / out-of-range and breakeven severities are CSS classes, since
one page shows many positions; only the header accent is parameterised.
"""

import re as _re


def _validate_css_color(value: str) -> str:
    """Validate a CSS color value to prevent style injection (CWE-79)."""
    if _re.fullmatch(r"#[0-9a-fA-F]{3,8}", value):
        return value
    raise ValueError(f"Invalid CSS color: {value!r}")


def build_css(accent: str = "#1fc7d4", accent_dark: str = "#7645d9") -> str:
    """Return the complete ``<style>`` block for the dashboard.

    Args:
        accent:      Primary header colour (PancakeSwap teal by default).
        accent_dark: Gradient end colour.
    """
    # CWE-79: validate colour parameters before CSS interpolation
    accent = _validate_css_color(accent)
    accent_dark = _validate_css_color(accent_dark)
    return f"""    <style>
        :root {{
            --primary: {accent};
            --primary-dark: {accent_dark};
            --success: #10b981;
            --warning: #f59e0b;
            --orange: #f97316;
            --danger: #ef4444;
            --bg: #f8fafc;
            --card: #ffffff;
            --border: #e1e5e9;
            --text: #1e293b;
            --text-light: #64748b;
            --shadow: 0 1px 3px 0 rgba(0, 0, 0, 0.1), 0 1px 2px 0 rgba(0, 0, 0, 0.06);
            --radius: 12px;

            --fs-xs:  0.75rem;    /* labels, captions          */
            --fs-sm:  0.85rem;    /* secondary text            */
            --fs-base: 0.95rem;   /* body text                 */
            --fs-lg:  1.1rem;     /* data values               */
            --fs-2xl: 1.5rem;     /* card headings             */
            --fs-3xl: 2rem;       /* hero numbers              */
        }}

        body {{
            font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, "Helvetica Neue", sans-serif;
            margin: 0;
            background: var(--bg);
            color: var(--text);
            line-height: 1.6;
            font-size: 15px;
        }}

        .container {{ max-width: 1200px; margin: 0 auto; padding: 2rem; }}

        .header {{
            background: linear-gradient(135deg, var(--primary) 0%, var(--primary-dark) 100%);
            color: white;
            padding: 2rem;
            border-radius: var(--radius);
            margin-bottom: 2rem;
            box-shadow: var(--shadow);
        }}
        .header h1 {{ margin: 0 0 0.5rem 0; font-size: var(--fs-2xl); }}
        .header .meta {{ font-size: var(--fs-sm); opacity: 0.9; word-break: break-all; }}

        .summary {{
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
            gap: 1rem;
            margin-bottom: 2rem;
        }}
        .tile {{
            background: var(--card);
            border: 1px solid var(--border);
            border-radius: var(--radius);
            padding: 1rem 1.25rem;
            box-shadow: var(--shadow);
        }}
        .tile .label {{ font-size: var(--fs-xs); text-transform: uppercase; color: var(--text-light); }}
        .tile .value {{ font-size: var(--fs-3xl); font-weight: 700; }}

        .position {{
            background: var(--card);
            border: 1px solid var(--border);
            border-radius: var(--radius);
            padding: 1.5rem;
            margin-bottom: 1.5rem;
            box-shadow: var(--shadow);
        }}
        .position h2 {{ margin: 0; font-size: var(--fs-2xl); }}
        .position h3 {{ font-size: var(--fs-lg); margin: 1.25rem 0 0.5rem 0; }}
        .position-head {{ display: flex; justify-content: space-between; align-items: center; gap: 1rem; flex-wrap: wrap; }}

        .badge {{ padding: 0.25rem 0.75rem; border-radius: 999px; font-size: var(--fs-xs); font-weight: 600; }}
        .badge.in-range {{ background: #f0fdf4; color: #15803d; border: 1px solid #bbf7d0; }}
        .badge.out-of-range {{ background: #fef2f2; color: #dc2626; border: 1px solid #fecaca; }}
        .badge.staked {{ background: #f5f3ff; color: #6d28d9; border: 1px solid #ddd6fe; }}

        .range-bar {{
            position: relative;
            height: 10px;
            background: #e2e8f0;
            border-radius: 5px;
            margin: 1.5rem 0 0.5rem 0;
        }}
        .range-bar .marker {{
            position: absolute;
            top: -5px;
            width: 4px;
            height: 20px;
            background: var(--primary-dark);
            border-radius: 2px;
        }}
        .range-labels {{ display: flex; justify-content: space-between; font-size: var(--fs-sm); color: var(--text-light); }}

        .grid {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(260px, 1fr)); gap: 1rem; }}

        table {{ width: 100%; border-collapse: collapse; font-size: var(--fs-sm); }}
        th, td {{ padding: 0.4rem 0.5rem; border-bottom: 1px solid var(--border); text-align: left; }}
        th {{ color: var(--text-light); font-weight: 600; }}
        td.num {{ text-align: right; font-variant-numeric: tabular-nums; }}

        .positive {{ color: var(--success); }}
        .negative {{ color: var(--danger); }}
        .muted {{ color: var(--text-light); }}

        /* breakeven severity: share of breakeven time still remaining */
        .be-met {{ color: var(--success); font-weight: 600; }}
        .be-low {{ color: #ca8a04; }}
        .be-mid {{ color: var(--orange); }}
        .be-high {{ color: var(--danger); font-weight: 600; }}

        .warning {{
            background: #fffbeb;
            border: 1px solid #fde68a;
            color: #92400e;
            padding: 0.5rem 0.75rem;
            border-radius: 8px;
            font-size: var(--fs-sm);
            margin-top: 0.75rem;
        }}
        .error {{
            background: #fef2f2;
            border: 1px solid #fecaca;
            color: #991b1b;
            padding: 1rem;
            border-radius: var(--radius);
        }}

        details summary {{ cursor: pointer; font-weight: 600; margin-top: 1rem; }}
        .footer {{ text-align: center; font-size: var(--fs-xs); color: var(--text-light); margin-top: 2rem; }}
    </style>"""
