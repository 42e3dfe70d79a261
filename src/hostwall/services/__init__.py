"""Host services: packet filter, init systems, syslog and run orchestration."""
