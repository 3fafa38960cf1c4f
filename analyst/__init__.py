"""Conversational analytics assistant.

Natural-language questions go to a tool-calling model; the model queries the
analytics backend, asks the UI to render charts, and streams prose back.
"""
