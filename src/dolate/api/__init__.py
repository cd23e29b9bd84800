"""本地 HTTP 接口."""
