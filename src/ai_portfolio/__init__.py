"""Portfolio trade execution and accounting engine."""
