REPORT_FILENAME = "coverage.out"
FILTERED_REPORT_FILENAME = "coverage_filtered.out"
HTML_REPORT_FILENAME = "coverage.html"
