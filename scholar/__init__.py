"""
pdf-scholar: conversation memory and resilient backend calls for a PDF tutor.

Page screenshots are explained by a locally hosted vision-language model
(Ollama by default); this package manages what context is kept, how backend
failures are retried, and how the live reply is relayed to the reader.
"""

__version__ = "0.1.0"
