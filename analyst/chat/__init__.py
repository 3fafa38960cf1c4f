"""Tool-calling chat orchestration.

This package drives a streaming conversation with a model that can:
- stream prose to the UI as it is generated
- request analytics queries and chart renders as tool calls
- continue after tool results until it has a final answer
"""
