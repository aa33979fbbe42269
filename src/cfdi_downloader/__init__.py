"""
cfdi_downloader — SAT Descarga Masiva client and CFDI classifier.

Authenticates with the holder's e.firma, drives the bulk-download protocol
(create request, verify, download package) and parses the CFDI 3.3 / 4.0
documents of each package into classified records.

Built on the Railway-Oriented Programming (ROP) result track in
cfdi_downloader.result for explicit, composable error handling.
"""

__version__ = "0.1.0"
