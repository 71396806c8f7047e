"""
Scan Services

Organized by responsibility:

1. discovery/ - URL enumeration
   - sitemap_resolver.py: Fetch, parse and limit sitemap URLs; reachability probe

2. validation/ - W3C markup validation
   - w3c_client.py: Nu HTML Checker client and message severity mapping
   - batch_validator.py: Rate-limited sequential validation with progress

3. queue/ - Background job bookkeeping
   - scan_queue.py: Celery dispatch plus persisted job records

4. scan/ - Scan lifecycle
   - orchestrator.py: Create, process, cancel; credit charge and refund
   - scan.py: Read-side queries, history, results, statistics, deletion
"""
