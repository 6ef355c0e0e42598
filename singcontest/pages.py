from __future__ import annotations

from typing import Iterable, Optional

import pandas as pd
from fastapi.responses import HTMLResponse

from .utils import escape_html as e


# -----------------------
# UI helpers
# -----------------------
def page(title: str, body: str, nav: str = "", status_code: int = 200) -> HTMLResponse:
    html = f"""
    <html>
      <head>
        <title>{e(title)} — ChanteEnScène</title>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <style>
          body {{ font-family: system-ui, Arial; max-width: 980px; margin: 0 auto; padding: 22px; }}
          input, textarea, button, select {{ font-size: 16px; padding: 10px; }}
          textarea {{ width: 100%; }}
          .card {{ border: 1px solid #ddd; border-radius: 12px; padding: 16px; margin: 16px 0; }}
          .row {{ display: flex; gap: 12px; flex-wrap: wrap; align-items: center; }}
          .row > * {{ flex: 1; min-width: 220px; }}
          table {{ border-collapse: collapse; width: 100%; }}
          th, td {{ border: 1px solid #ddd; padding: 8px; }}
          th {{ text-align: left; background: #f7f7f7; }}
          .muted {{ color: #666; }}
          .pill {{ display:inline-block; padding:4px 10px; border:1px solid #ddd; border-radius:999px; }}
          a {{ text-decoration: none; }}
          .danger {{ color: #b00020; }}
          .ok {{ color: #2e7d32; }}
          .inline {{ display: inline; }}
          .chrono-green {{ color: #2e7d32; }}
          .chrono-amber {{ color: #f5a623; }}
          .chrono-red {{ color: #b00020; }}
          .big {{ font-size: 40px; font-weight: bold; }}
        </style>
      </head>
      <body>
        {nav}
        <h1>{e(title)}</h1>
        {body}
      </body>
    </html>
    """
    return HTMLResponse(html, status_code=status_code)


def error_page(message: str, back: Optional[str] = None, status_code: int = 400) -> HTMLResponse:
    link = f'<p><a href="{e(back)}">← Retour</a></p>' if back else ""
    return page("Erreur", f'<div class="card"><p class="danger">{e(message)}</p>{link}</div>', status_code=status_code)


def admin_nav(session_id: Optional[int] = None) -> str:
    links = ['<a href="/admin">Sessions</a>', '<a href="/admin/palmares">Palmarès</a>']
    if session_id:
        for path, label in (
            ("candidats", "Candidats"),
            ("jury", "Jury"),
            ("selection", "Sélection"),
            ("evenements", "Régie"),
            ("stats", "Statistiques"),
            ("communication", "Communication"),
        ):
            links.append(f'<a href="/admin/sessions/{session_id}/{path}">{label}</a>')
    links.append('<form class="inline" method="post" action="/admin/logout"><button type="submit">Déconnexion</button></form>')
    return f'<p class="row">{" | ".join(links)}</p>'


def button_form(action: str, label: str, hidden: Optional[dict] = None, confirm: Optional[str] = None) -> str:
    fields = "".join(f'<input type="hidden" name="{e(k)}" value="{e(str(v))}" />' for k, v in (hidden or {}).items())
    onsubmit = f' onsubmit="return confirm(\'{e(confirm)}\');"' if confirm else ""
    return (
        f'<form class="inline" method="post" action="{e(action)}"{onsubmit}>'
        f'{fields}<button type="submit">{e(label)}</button></form>'
    )


def df_table(df: pd.DataFrame, columns: Optional[Iterable[str]] = None, empty: str = "Aucune donnée.") -> str:
    cols = list(columns or df.columns)
    head = "".join(f"<th>{e(str(c))}</th>" for c in cols)
    rows = ""
    for _, r in df.iterrows():
        rows += "<tr>" + "".join(f"<td>{e('' if pd.isna(r[c]) else str(r[c]))}</td>" for c in cols) + "</tr>"
    if not rows:
        rows = f'<tr><td colspan="{len(cols)}" class="muted">{e(empty)}</td></tr>'
    return f"<table><thead><tr>{head}</tr></thead><tbody>{rows}</tbody></table>"
