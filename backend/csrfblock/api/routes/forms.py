# backend/csrfblock/api/routes/forms.py
from __future__ import annotations

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse

from csrfblock.core.config import settings

router = APIRouter(tags=["forms"])

PAGE = """<html>
  <head>
    <title>input form</title>
  </head>
  <body>
    <form action="/receive" method="post">
      <input type="text" name="email" /><input type="submit" />
    </form>
  </body>
</html>
"""


@router.get("/", response_class=HTMLResponse)
def form_page():
    # Token markup is added on the way out, the page knows nothing about it
    return PAGE


@router.post("/receive", response_class=PlainTextResponse)
def receive(email: str = Form("")):
    return f"received {email}"


@router.get("/token")
def session_token(request: Request):
    # Plain JSON: never rewritten, never creates a token
    return {"has_token": settings.session_key in request.session}
