"""Backend package: settings, database, job queue, worker and HTTP surface.

The matching pipeline itself lives in ``engine.pipelines``; the generative
model client and prompt codec live in the top-level ``ai`` package.
"""
