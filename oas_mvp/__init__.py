"""OpenAuditSwarms MVP."""
