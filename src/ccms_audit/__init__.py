"""ccms-audit: certificate compliance auditing for IdM-enrolled RHEL hosts."""
