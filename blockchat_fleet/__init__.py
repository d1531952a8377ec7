"""
blockchat_fleet module

This module contains:
 - actions that change the state of a block_chat fleet: deploying binaries
   and unit files, and driving the stop/start lifecycle (actions directory)
 - probes that gather information about the fleet (probes directory)
 - scenario resolution: which node runs what, with which bindings
   (scenario.py)
 - systemd integration (units.py)
 - the fleet report collected from every stage (report.py)
 - common files (common directory)
 - A remote execution tool built on Python Fabric (execute directory).

The block_chat daemon and helper are opaque to this module. It only decides
their environment, where their files live and when their processes start and
stop.

Every remote fan-out runs one task per node (or per service instance) in
parallel. A failing node never blocks or cancels the others. Instead, each
outcome lands in a FleetReport, which is the place to look for partial
failures.

Ordering across the fleet is explicit:
1. Deployment stages are barriers. No node starts stage N+1 before every node
   has finished stage N.
2. Helpers are issued on every node before any daemon is started, since a
   daemon contacts its helper as soon as it comes up.
"""
