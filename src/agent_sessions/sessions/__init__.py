"""Session orchestration: persistent multi-step workflows driven by an external agent.

A session is one task instance. Each step produces a command for the agent
(or a shell, or a builtin), and interprets the result into a state patch.
Workflow definitions pick the next step from the last completed
``(status, step)`` pair, the execution guard keeps at most one command in
flight per session, and progress events reported while a command runs are
recorded and fanned out to live subscribers.
"""
