# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
