"""Cronkeeper cron module -- Schedules, Compiler, Import und Installer."""
