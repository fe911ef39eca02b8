"""
Runtime: activities, the in-process execution host, the client and the
run service. Import the submodules directly, e.g.
``from graphrunner.runtime.host import GraphExecutionHost``.
"""
