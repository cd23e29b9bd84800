"""Dolate - 稍后阅读文章管理的离线同步与本地缓存."""
